"""Durable sync intent: the sync_outbox table and its relay into SyncQueue.

Services write an outbox row in the same transaction as the entity change,
then enqueue the task in memory for immediate processing. If the process
dies before the task is processed, the row stays claimed; the relay in a
later process reclaims it after stale_after and enqueues it again. Delivery
is at-least-once. The processor skips rows already marked done and writes
the entity's current values, so a repeat converges on the database.

Rows are claimed with FOR UPDATE SKIP LOCKED so several app instances can
relay concurrently without handing the same row out twice.
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.brokerage.sync.models import SyncOutboxModel
from src.brokerage.sync.queue import SyncQueue
from src.brokerage.sync.repository import SessionFactory
from src.brokerage.sync.schemas import OutboxEntry, OutboxStatus, SyncTask

logger = structlog.get_logger(__name__)


def _model_to_entry(model: SyncOutboxModel) -> OutboxEntry:
    return OutboxEntry(
        id=model.id,
        entity_type=model.entity_type,
        entity_id=model.entity_id,
        task_type=model.task_type,
        payload=model.payload or {},
        status=model.status,
        attempts=model.attempts or 0,
        created_at=model.created_at,
    )


class SyncOutboxRepository:
    """CRUD for sync_outbox.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def add(self, session: AsyncSession, task: SyncTask, claimed: bool = True) -> int:
        """Record task inside the caller's transaction. Returns the row id.

        claimed=True marks the row as already handed to this process's
        queue; the relay only picks it up again once it goes stale. The
        caller commits; nothing is visible to the relay before that.
        """
        model = SyncOutboxModel(
            entity_type=task.entity_type.value,
            entity_id=task.entity_id,
            task_type=task.type.value,
            payload=task.model_dump(mode="json", exclude={"outbox_id"}),
            status=(OutboxStatus.PROCESSING if claimed else OutboxStatus.PENDING).value,
            attempts=1 if claimed else 0,
            claimed_at=datetime.now(timezone.utc) if claimed else None,
        )
        session.add(model)
        await session.flush()
        return model.id

    async def claim_batch(self, limit: int = 50) -> list[OutboxEntry]:
        """Claim up to limit pending rows, oldest first."""
        async for session in self._session_factory():
            stmt = (
                select(SyncOutboxModel)
                .where(SyncOutboxModel.status == OutboxStatus.PENDING.value)
                .order_by(SyncOutboxModel.id)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            result = await session.execute(stmt)
            models = result.scalars().all()

            now = datetime.now(timezone.utc)
            for model in models:
                model.status = OutboxStatus.PROCESSING.value
                model.attempts = (model.attempts or 0) + 1
                model.claimed_at = now
            await session.commit()
            return [_model_to_entry(m) for m in models]

    async def _settle(self, outbox_id: int, **values: Any) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(SyncOutboxModel)
                .where(SyncOutboxModel.id == outbox_id)
                .values(processed_at=datetime.now(timezone.utc), **values)
            )
            await session.commit()

    async def mark_done(self, outbox_id: int) -> None:
        await self._settle(outbox_id, status=OutboxStatus.DONE.value, last_error=None)

    async def mark_failed(self, outbox_id: int, error: str) -> None:
        await self._settle(outbox_id, status=OutboxStatus.FAILED.value, last_error=error)

    async def is_done(self, outbox_id: int) -> bool:
        async for session in self._session_factory():
            status = await session.scalar(
                select(SyncOutboxModel.status).where(SyncOutboxModel.id == outbox_id)
            )
            return status == OutboxStatus.DONE.value

    async def release_stale(self, older_than: timedelta) -> int:
        """Return claimed rows older than the threshold to pending."""
        cutoff = datetime.now(timezone.utc) - older_than
        async for session in self._session_factory():
            result = await session.execute(
                update(SyncOutboxModel)
                .where(
                    SyncOutboxModel.status == OutboxStatus.PROCESSING.value,
                    SyncOutboxModel.claimed_at < cutoff,
                )
                .values(status=OutboxStatus.PENDING.value, claimed_at=None)
            )
            await session.commit()
            return result.rowcount


class OutboxRelay:
    """Polls sync_outbox and feeds unprocessed rows into the SyncQueue.

    Args:
        repository: SyncOutboxRepository.
        queue: Queue the claimed tasks are enqueued on.
        poll_interval: Seconds between polls.
        batch_size: Rows claimed per poll.
        stale_after: Seconds after which a claimed, unsettled row is
            presumed orphaned by a dead process.
    """

    def __init__(
        self,
        repository: SyncOutboxRepository,
        queue: SyncQueue,
        poll_interval: float = 2.0,
        batch_size: int = 50,
        stale_after: float = 300.0,
    ) -> None:
        self._repository = repository
        self._queue = queue
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._stale_after = timedelta(seconds=stale_after)
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def poll_once(self) -> int:
        """Reclaim orphaned rows, then claim and enqueue one batch.

        Returns:
            Number of tasks enqueued.
        """
        released = await self._repository.release_stale(self._stale_after)
        if released:
            logger.warning("outbox_relay.reclaimed_stale", count=released)

        entries = await self._repository.claim_batch(self._batch_size)
        for entry in entries:
            task = SyncTask.model_validate({**entry.payload, "outbox_id": entry.id})
            self._queue.enqueue(task)

        if entries:
            logger.info("outbox_relay.enqueued", count=len(entries))
        return len(entries)

    async def _run(self) -> None:
        logger.info(
            "outbox_relay.started",
            poll_interval=self._poll_interval,
            batch_size=self._batch_size,
        )
        while not self._stop_event.is_set():
            try:
                await self.poll_once()
            except Exception as exc:
                logger.error("outbox_relay.poll_failed", error=str(exc), exc_info=True)

            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval)
        logger.info("outbox_relay.stopped")

    def start(self) -> None:
        """Begin polling in a background task."""
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="sync-outbox-relay"
        )

    async def stop(self) -> None:
        """Signal the loop and wait for the current poll to finish."""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
