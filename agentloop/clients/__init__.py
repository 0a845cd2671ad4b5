"""Backend adapters for LLM providers."""

from agentloop.clients.base import BackendAdapter
from agentloop.config import BackendConfig


def create_backend(config: BackendConfig) -> BackendAdapter:
    """Build the backend adapter selected by ``config.driver``."""
    if config.driver == "anthropic":
        from agentloop.clients.anthropic import AnthropicBackend

        return AnthropicBackend(config)

    if config.driver in ("openai", "deepseek", "openrouter"):
        from agentloop.clients.openai import OpenAICompatibleBackend

        return OpenAICompatibleBackend(config)

    if config.driver == "fake":
        from agentloop.clients.fake import FakeBackend

        return FakeBackend()

    raise ValueError(f"Unknown backend driver: {config.driver}")


__all__ = ["BackendAdapter", "create_backend"]
