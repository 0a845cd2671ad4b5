"""Backend adapter contract with retry and backoff."""

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from agentloop.clients.history import normalize_history
from agentloop.clients.rate_limit import RateLimiter
from agentloop.config import BackendConfig
from agentloop.exceptions import DriverError, RateLimitExceeded
from agentloop.models.llm import DriverResponse, PromptOptions, Usage
from agentloop.models.messages import Message
from agentloop.tools.base import ToolDefinition
from agentloop.utils.logging import get_logger
from agentloop.utils.tokens import estimate_tokens

logger = get_logger(__name__)

ChunkCallback = Callable[[str], Any]
SleepFunction = Callable[[float], Awaitable[None]]


class BackendAdapter(ABC):
    """Uniform prompt/response contract over one LLM provider."""

    name: str = "backend"

    def __init__(self, config: BackendConfig, sleep: SleepFunction | None = None):
        """Initialize the adapter.

        Args:
            config: Backend configuration
            sleep: Awaitable sleep used for backoff (defaults to asyncio.sleep)
        """
        self.config = config
        self.model = config.resolved_model
        self._usage = Usage()
        self._sleep = sleep or asyncio.sleep

        self.rate_limiter: RateLimiter | None = None
        if config.requests_per_minute or config.tokens_per_minute:
            self.rate_limiter = RateLimiter(config.requests_per_minute, config.tokens_per_minute, sleep=self._sleep)

    @abstractmethod
    async def prompt(
        self,
        message: str | None,
        tools: list[ToolDefinition],
        history: list[Message],
        options: PromptOptions | None = None,
    ) -> DriverResponse:
        """Send one request and return the normalized response.

        Args:
            message: New user message appended after the history, if any
            tools: Tools the model may call
            history: Prior conversation messages
            options: System prompt and sampling overrides

        Returns:
            Normalized driver response
        """

    @abstractmethod
    async def stream(
        self,
        message: str | None,
        tools: list[ToolDefinition],
        history: list[Message],
        on_chunk: ChunkCallback,
        options: PromptOptions | None = None,
    ) -> DriverResponse:
        """Like ``prompt`` but delivers text chunks to ``on_chunk`` as they arrive."""

    def set_model(self, model: str) -> None:
        self.model = model

    def get_usage(self) -> Usage:
        """Cumulative token usage across every request made by this adapter."""
        return Usage(self._usage.prompt_tokens, self._usage.completion_tokens)

    def _record_usage(self, usage: Usage) -> None:
        self._usage.add(usage)

    def _build_messages(self, message: str | None, history: list[Message]) -> list[Message]:
        messages = normalize_history(history)
        if message:
            messages.append(Message.user(message))
        return messages

    async def _throttle(self, messages: list[Message], system: str | None) -> None:
        if not self.rate_limiter:
            return
        text = (system or "") + "".join(m.content for m in messages)
        await self.rate_limiter.acquire(estimate_tokens(text), identifier=self.name)

    async def _request_with_retries[T](
        self, call: Callable[[], Awaitable[T]], can_retry: Callable[[], bool] | None = None
    ) -> T:
        """Execute a backend request with the retry policy.

        429 waits for Retry-After (or the configured delay) and fails with
        RateLimitExceeded once attempts run out. 5xx and transport failures back
        off by ``retry_delay * attempt``. Any other 4xx fails immediately.

        Args:
            call: Issues one request
            can_retry: Checked before each retry; a stream that has already
                delivered chunks returns False so output is never replayed
        """
        attempts = self.config.max_retries

        for attempt in range(1, attempts + 1):
            try:
                return await call()

            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                body = _response_body(e.response)
                retry_allowed = attempt < attempts and (can_retry is None or can_retry())

                if status == 429:
                    retry_after = self._retry_after(e.response)
                    if not retry_allowed:
                        raise RateLimitExceeded(
                            f"Rate limit exceeded after {attempt} attempts",
                            body=body,
                            retry_after=retry_after,
                        ) from e
                    logger.warning(f"Rate limited by {self.name}, retrying in {retry_after:.1f}s")
                    await self._sleep(retry_after)
                    continue

                if status >= 500 and retry_allowed:
                    delay = self.config.retry_delay * attempt
                    logger.warning(f"{self.name} returned {status}, retrying in {delay:.1f}s (attempt {attempt})")
                    await self._sleep(delay)
                    continue

                raise DriverError(f"{self.name} request failed with status {status}", status, body) from e

            except httpx.TransportError as e:
                if attempt < attempts and (can_retry is None or can_retry()):
                    delay = self.config.retry_delay * attempt
                    logger.warning(f"Connection to {self.name} failed ({e}), retrying in {delay:.1f}s")
                    await self._sleep(delay)
                    continue
                raise DriverError(f"Failed after {attempt} attempts: {e}") from e

        raise DriverError(f"{self.name} made no request attempts")

    def _retry_after(self, response: httpx.Response) -> float:
        header = response.headers.get("retry-after")
        try:
            delay = float(header) if header is not None else self.config.retry_delay
        except ValueError:
            delay = self.config.retry_delay
        return min(max(delay, 0.0), self.config.max_retry_after)


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError, httpx.ResponseNotRead):
        try:
            return response.text
        except httpx.ResponseNotRead:
            return None
