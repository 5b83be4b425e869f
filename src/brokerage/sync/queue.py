"""In-process queue that serialises spreadsheet writes per entity.

Each (entity_type, entity_id) pair gets its own FIFO lane drained by one
asyncio task, so two edits to the same buyer reach the sheet in the order
they were made. Lanes for different entities run concurrently, bounded by a
shared semaphore to stay within the Sheets API quota.

enqueue() is a plain method: it appends and schedules, never awaits the
sheet, so request handlers return as soon as the database write commits.
Processor errors are logged and counted; the lane moves on to its next task.
Durability across restarts comes from the outbox relay, not from this queue.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from src.brokerage.sync.schemas import QueueStats, SyncTask

logger = structlog.get_logger(__name__)

SyncTaskProcessor = Callable[[SyncTask], Awaitable[Any]]
LaneKey = tuple[str, str]


class SyncQueueClosedError(RuntimeError):
    """enqueue() was called after close()."""


class SyncQueue:
    """Per-entity FIFO lanes with bounded cross-entity concurrency.

    Args:
        processor: Coroutine function run once per task, in lane order.
        max_concurrency: Maximum tasks processed at the same time across
            all lanes.
    """

    def __init__(self, processor: SyncTaskProcessor, max_concurrency: int = 4) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._processor = processor
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._lanes: dict[LaneKey, deque[SyncTask]] = {}
        self._drainers: dict[LaneKey, asyncio.Task[None]] = {}
        self._in_flight = 0
        self._processed = 0
        self._failed = 0
        self._closed = False

    @property
    def pending_count(self) -> int:
        """Tasks enqueued but not yet started."""
        return sum(len(lane) for lane in self._lanes.values())

    @property
    def is_closed(self) -> bool:
        return self._closed

    def enqueue(self, task: SyncTask) -> None:
        """Append task to its entity's lane and return immediately.

        Must be called from a running event loop.

        Raises:
            SyncQueueClosedError: If the queue has been closed.
        """
        if self._closed:
            raise SyncQueueClosedError("SyncQueue is closed")

        key = task.lane_key
        self._lanes.setdefault(key, deque()).append(task)
        logger.debug(
            "sync_queue.enqueued",
            entity_type=key[0],
            entity_id=key[1],
            task_type=task.type.value,
            lane_depth=len(self._lanes[key]),
        )

        if key not in self._drainers:
            self._drainers[key] = asyncio.get_running_loop().create_task(
                self._drain(key), name=f"sync-lane:{key[0]}:{key[1]}"
            )

    async def _drain(self, key: LaneKey) -> None:
        lane = self._lanes[key]
        try:
            while lane:
                async with self._semaphore:
                    task = lane.popleft()
                    self._in_flight += 1
                    try:
                        await self._processor(task)
                        self._processed += 1
                    except Exception as exc:
                        self._failed += 1
                        logger.error(
                            "sync_queue.task_failed",
                            entity_type=key[0],
                            entity_id=key[1],
                            task_type=task.type.value,
                            error=str(exc),
                            exc_info=True,
                        )
                    finally:
                        self._in_flight -= 1
        finally:
            # No await between the empty check and here, so no task can
            # slip into the lane after its drainer decided to stop.
            self._drainers.pop(key, None)
            if not lane:
                self._lanes.pop(key, None)

    async def wait_idle(self) -> None:
        """Wait until every lane has drained, including tasks added meanwhile."""
        while self._drainers:
            await asyncio.gather(*list(self._drainers.values()), return_exceptions=True)

    async def close(self) -> None:
        """Stop accepting tasks and wait for queued ones to finish."""
        self._closed = True
        await self.wait_idle()
        logger.info(
            "sync_queue.closed",
            processed=self._processed,
            failed=self._failed,
        )

    def stats(self) -> QueueStats:
        return QueueStats(
            pending=self.pending_count,
            in_flight=self._in_flight,
            processed=self._processed,
            failed=self._failed,
            lanes=len(self._drainers),
        )
