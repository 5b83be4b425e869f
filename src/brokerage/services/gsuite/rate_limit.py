"""Token bucket limiter for Google Sheets API calls.

The Sheets API enforces a per-minute read/write quota per project. All
GoogleSheetsClient calls acquire a token first so bursts from the sync
queue degrade into waiting rather than 429 responses.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class SheetsRateLimiter:
    """Async token bucket refilled continuously over a time window.

    Args:
        max_tokens: Bucket capacity (requests allowed per window).
        window_seconds: Time for an empty bucket to refill completely.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        max_tokens: int = 60,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_tokens <= 0 or window_seconds <= 0:
            raise ValueError("max_tokens and window_seconds must be positive")
        self._max_tokens = float(max_tokens)
        self._refill_rate = max_tokens / window_seconds
        self._clock = clock
        self._tokens = float(max_tokens)
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self._max_tokens, self._tokens + elapsed * self._refill_rate)
            self._last_refill = now

    async def acquire(self, tokens: int = 1, timeout: float | None = None) -> bool:
        """Take tokens, waiting for refill if needed.

        Returns False if the tokens could not be obtained within timeout.
        """
        if tokens > self._max_tokens:
            raise ValueError(f"Cannot acquire {tokens} tokens from a bucket of {self._max_tokens:g}")

        deadline = None if timeout is None else self._clock() + timeout

        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    return True

                wait = (tokens - self._tokens) / self._refill_rate
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0 or wait > remaining:
                        logger.warning(
                            "sheets_rate_limit.acquire_timeout",
                            requested=tokens,
                            available=round(self._tokens, 2),
                        )
                        return False

                logger.debug("sheets_rate_limit.waiting", wait_seconds=round(wait, 3))
                await asyncio.sleep(wait)

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run an API call once a token is available."""
        await self.acquire(1)
        return await fn()

    def usage(self) -> dict[str, float]:
        """Current bucket state."""
        self._refill()
        return {
            "available_tokens": self._tokens,
            "max_tokens": self._max_tokens,
            "refill_per_second": self._refill_rate,
        }
