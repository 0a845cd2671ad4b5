"""Configuration objects for the agent core.

Configuration is built once (usually via ``AgentConfig.from_env``) and handed to each
component's constructor.
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from agentloop.services.prompts import DEFAULT_SYSTEM_PROMPT
from agentloop.utils.logging import LogConfig

DriverName = Literal["anthropic", "openai", "deepseek", "openrouter", "fake"]

DEFAULT_MODELS: dict[str, str] = {
    "anthropic": "claude-sonnet-4-20250514",
    "openai": "gpt-4o-mini",
    "deepseek": "deepseek-chat",
    "openrouter": "openai/gpt-4o-mini",
    "fake": "fake-model",
}

API_KEY_VARIABLES: dict[str, str] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}


class BackendConfig(BaseModel):
    """Settings for the LLM backend adapter."""

    driver: DriverName = "anthropic"
    api_key: str | None = None
    model: str | None = None
    base_url: str | None = None
    timeout: float = 60.0

    max_retries: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=1.0, ge=0)
    max_retry_after: float = 120.0  # Cap on server-provided Retry-After

    temperature: float = 0.7
    max_tokens: int = 4096

    # Client-side rate limiting, disabled when None
    requests_per_minute: int | None = None
    tokens_per_minute: int | None = None

    # OpenRouter attribution headers
    site_url: str | None = None
    site_name: str | None = None

    @property
    def resolved_model(self) -> str:
        """Model name, falling back to the driver default."""
        return self.model or DEFAULT_MODELS[self.driver]


class SecurityConfig(BaseModel):
    """Security gate settings."""

    enabled: bool = True
    max_tool_calls_per_request: int = 10
    max_iterations: int = 5
    max_message_length: int = 5000
    confirm_destructive: bool = True

    moderation_enabled: bool = True
    block_injections: bool = True

    sanitize_output: bool = True
    redact_secrets: bool = True
    prevent_xss: bool = True

    prompt_hardening: bool = True


class MemoryConfig(BaseModel):
    """Conversation memory settings."""

    driver: Literal["memory", "file", "null"] = "memory"
    summarize_after: int = Field(default=10, ge=1)
    recent_messages: int = Field(default=4, ge=0)
    max_messages: int = Field(default=100, ge=1)
    ai_summarization: bool = False
    recall_limit: int = 50
    storage_path: Path = Path("storage/conversations")
    session_timeout_minutes: int = 60

    @field_validator("recent_messages")
    @classmethod
    def validate_recent_messages(cls, v: int) -> int:
        """Keep at least one message out of every summary."""
        return max(v, 1)


class AgentConfig(BaseModel):
    """Top-level configuration for an orchestrator instance."""

    backend: BackendConfig = Field(default_factory=BackendConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    log: LogConfig = Field(default_factory=LogConfig)

    system_prompt: str | None = None
    default_system_prompt: str | None = DEFAULT_SYSTEM_PROMPT
    smart_resolution: bool = True

    # Hard cap on model calls per run; reaching it is a fatal error
    max_loop_iterations: int = 10

    @model_validator(mode="after")
    def validate_loop_cap(self) -> "AgentConfig":
        """The iteration limit must be reached before the hard cap while the gate is on."""
        if self.security.enabled and self.security.max_iterations > self.max_loop_iterations:
            raise ValueError(
                f"max_iterations ({self.security.max_iterations}) must not exceed "
                f"max_loop_iterations ({self.max_loop_iterations})"
            )
        return self

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Build configuration from ``AI_AGENT_*`` and provider environment variables."""
        driver = os.getenv("AI_AGENT_DRIVER", "anthropic")
        key_variable = API_KEY_VARIABLES.get(driver)

        backend = BackendConfig(
            driver=driver,
            api_key=os.getenv(key_variable) if key_variable else None,
            model=os.getenv("AI_AGENT_MODEL"),
            base_url=os.getenv("AI_AGENT_BASE_URL"),
            site_url=os.getenv("AI_AGENT_SITE_URL"),
            site_name=os.getenv("AI_AGENT_SITE_NAME"),
        )

        security = SecurityConfig(
            max_iterations=int(os.getenv("AI_AGENT_MAX_ITERATIONS", "5")),
        )

        memory = MemoryConfig(
            driver=os.getenv("AI_AGENT_MEMORY_DRIVER", "memory"),
            storage_path=Path(os.getenv("AI_AGENT_MEMORY_PATH", "storage/conversations")),
            ai_summarization=os.getenv("AI_AGENT_AI_SUMMARIZATION", "false").lower() == "true",
        )

        return cls(
            backend=backend,
            security=security,
            memory=memory,
            log=LogConfig.from_env(),
            system_prompt=os.getenv("AI_AGENT_SYSTEM_PROMPT"),
            max_loop_iterations=int(os.getenv("AI_AGENT_MAX_LOOP_ITERATIONS", max(10, security.max_iterations))),
        )
