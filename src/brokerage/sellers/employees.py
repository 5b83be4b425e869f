"""Staff initials -> name lookup with a time-based cache.

The seller sheet records staff by initials (訪問査定取得者 etc.). Resolving
them on every request would hit the employees table per seller, so the
whole active directory is loaded at once and reused until the TTL expires.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)

DirectoryLoader = Callable[[], Awaitable[dict[str, str]]]


class EmployeeDirectory:
    """Injectable TTL cache over the employee directory.

    Args:
        loader: Coroutine function returning {initials: name}.
        ttl_seconds: Seconds a loaded directory stays valid.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        loader: DirectoryLoader,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._names: dict[str, str] = {}
        self._loaded_at: float | None = None
        self._lock = asyncio.Lock()

    def _expired(self) -> bool:
        return self._loaded_at is None or self._clock() - self._loaded_at >= self._ttl

    async def refresh(self) -> None:
        """Reload the directory now.

        A failed reload keeps the previous entries so lookups degrade to
        stale names rather than none.
        """
        async with self._lock:
            try:
                names = await self._loader()
            except Exception as exc:
                logger.error("employee_directory.refresh_failed", error=str(exc))
                return
            self._names = {k.strip(): v for k, v in names.items() if k}
            self._loaded_at = self._clock()
            logger.debug("employee_directory.refreshed", count=len(self._names))

    def invalidate(self) -> None:
        """Force the next lookup to reload."""
        self._loaded_at = None

    async def get_name(self, initials: str | None) -> str | None:
        """Name for initials, None when blank or unknown."""
        if not initials or not initials.strip():
            return None
        if self._expired():
            await self.refresh()
        return self._names.get(initials.strip())
