"""Client-side request and token rate limiting."""

import asyncio
import time
from collections.abc import Awaitable, Callable

from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from agentloop.utils.logging import get_logger

logger = get_logger(__name__)


class RateLimiter:
    """Moving-window limiter for outgoing backend requests."""

    def __init__(
        self,
        requests_per_minute: int | None = None,
        tokens_per_minute: int | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        """Initialize the limiter.

        Args:
            requests_per_minute: Maximum requests per minute, unlimited when None
            tokens_per_minute: Maximum estimated tokens per minute, unlimited when None
            sleep: Awaitable sleep used while waiting for the window to reset
        """
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)
        self.request_limit = parse(f"{requests_per_minute}/minute") if requests_per_minute else None
        self.token_limit = parse(f"{tokens_per_minute}/minute") if tokens_per_minute else None
        self._sleep = sleep or asyncio.sleep

    async def acquire(self, estimated_tokens: int, identifier: str = "backend") -> None:
        """Wait until the request fits inside the configured windows."""
        if self.request_limit and not self.limiter.hit(self.request_limit, identifier):
            await self._wait(self.request_limit, identifier, "Request")
            self.limiter.hit(self.request_limit, identifier)

        token_identifier = f"{identifier}_tokens"
        cost = max(estimated_tokens, 1)
        if self.token_limit and not self.limiter.hit(self.token_limit, token_identifier, cost=cost):
            await self._wait(self.token_limit, token_identifier, "Token")
            self.limiter.hit(self.token_limit, token_identifier, cost=cost)

    async def _wait(self, limit, identifier: str, label: str) -> None:
        window_stats = self.limiter.get_window_stats(limit, identifier)
        wait_time = max(0.0, window_stats.reset_time - time.time())
        if wait_time > 0:
            logger.warning(f"{label} rate limit exceeded, waiting {wait_time:.2f}s")
            await self._sleep(wait_time)
