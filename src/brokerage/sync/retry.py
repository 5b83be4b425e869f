"""Retry with exponential backoff and the durable retry queue.

RetryHandler wraps a spreadsheet write in tenacity.AsyncRetrying:
- Delay before attempt n+1 is min(base_delay * multiplier^(n-1), max_delay);
  attempt 1 never waits.
- NonRetryableSyncError (row missing, unmapped column) stops immediately.
- Exhaustion is reported as a RetryResult, not raised, so callers can
  decide between queueing the change and surfacing the error.

Changes that exhaust retries are written to pending_sync_changes through
queue_failed_change(). That row format is read by the reconciliation job
(process_pending) and by the manual replay endpoint.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.brokerage.config import Settings
from src.brokerage.sync.errors import NonRetryableSyncError
from src.brokerage.sync.repository import FailedChangeRepository
from src.brokerage.sync.schemas import (
    FailedChangeCreate,
    FailedChangeRead,
    FailedChangeStatus,
    PendingProcessResult,
    RetryResult,
)

logger = structlog.get_logger(__name__)

FailedChangeProcessor = Callable[[FailedChangeRead], Awaitable[bool]]


class RetryConfig(BaseModel):
    """Backoff parameters. Defaults: 5 attempts, 1s, x2, capped at 10s."""

    max_attempts: int = Field(default=5, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=10.0, ge=0)

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryConfig:
        return cls(
            max_attempts=settings.SYNC_MAX_ATTEMPTS,
            base_delay=settings.SYNC_BASE_DELAY_SECONDS,
            multiplier=settings.SYNC_BACKOFF_MULTIPLIER,
            max_delay=settings.SYNC_MAX_DELAY_SECONDS,
        )

    def delay_before(self, attempt: int) -> float:
        """Sleep preceding the given 1-based attempt number."""
        if attempt <= 1:
            return 0.0
        return min(self.base_delay * self.multiplier ** (attempt - 2), self.max_delay)


def _is_retryable(exc: BaseException) -> bool:
    return not isinstance(exc, NonRetryableSyncError)


class RetryHandler:
    """Runs operations with backoff and persists what could not be delivered.

    Args:
        config: Backoff parameters.
        failed_changes: Repository for pending_sync_changes. Optional so the
            handler can run where no database is configured; queueing then
            reports False.
        sleep: Awaitable sleep, injectable so tests can record delays.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        failed_changes: FailedChangeRepository | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._config = config or RetryConfig()
        self._failed_changes = failed_changes
        self._sleep = sleep

    @property
    def config(self) -> RetryConfig:
        return self._config

    def _log_retry(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        logger.warning(
            "retry.attempt_failed",
            attempt=retry_state.attempt_number,
            max_attempts=self._config.max_attempts,
            next_delay=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(outcome.exception()) if outcome is not None else None,
        )

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[Any]],
    ) -> RetryResult:
        """Run operation until it succeeds, fails terminally, or attempts run out.

        Args:
            operation: Zero-argument coroutine function. Any exception counts
                as a failed attempt; NonRetryableSyncError ends immediately.

        Returns:
            RetryResult with the operation's return value on success, or the
            last error text and the number of attempts made.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.max_attempts),
            wait=wait_exponential(
                multiplier=self._config.base_delay,
                exp_base=self._config.multiplier,
                max=self._config.max_delay,
            ),
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )

        attempts = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts += 1
                    result = await operation()
        except Exception as exc:
            logger.error(
                "retry.gave_up",
                attempts=attempts,
                retryable=_is_retryable(exc),
                error=str(exc),
            )
            return RetryResult(
                success=False,
                attempts=attempts,
                error=str(exc),
                terminal=not _is_retryable(exc),
            )

        if attempts > 1:
            logger.info("retry.recovered", attempts=attempts)
        return RetryResult(success=True, attempts=attempts, result=result)

    # ── Retry Queue ─────────────────────────────────────────────────────

    async def queue_failed_change(self, change: FailedChangeCreate) -> bool:
        """Persist a change for the reconciliation job.

        Never raises: a failure to record a failure is logged and reported
        as False so the caller's request still completes.
        """
        if self._failed_changes is None:
            logger.error(
                "retry.queue_unavailable",
                entity_type=change.entity_type.value,
                entity_key=change.entity_key,
                field_name=change.field_name,
            )
            return False

        try:
            record = await self._failed_changes.add(change)
        except Exception as exc:
            logger.error(
                "retry.queue_failed",
                entity_type=change.entity_type.value,
                entity_key=change.entity_key,
                field_name=change.field_name,
                error=str(exc),
            )
            return False

        logger.info(
            "retry.change_queued",
            change_id=record.id,
            entity_type=change.entity_type.value,
            entity_key=change.entity_key,
            field_name=change.field_name,
            retry_count=change.retry_count,
        )
        return True

    def _require_repository(self) -> FailedChangeRepository:
        if self._failed_changes is None:
            raise RuntimeError("RetryHandler has no failed change repository configured")
        return self._failed_changes

    async def get_pending_changes(self, limit: int = 100) -> list[FailedChangeRead]:
        """Oldest pending rows first."""
        return await self._require_repository().list_changes(
            status=FailedChangeStatus.PENDING, limit=limit
        )

    async def list_failed_changes(
        self,
        status: FailedChangeStatus | None = None,
        limit: int = 100,
    ) -> list[FailedChangeRead]:
        return await self._require_repository().list_changes(status=status, limit=limit)

    async def process_pending(
        self,
        processor: FailedChangeProcessor,
        limit: int = 100,
    ) -> PendingProcessResult:
        """One reconciliation pass over pending rows.

        Each row moves to processing, then to completed when processor
        returns True. Otherwise retry_count is incremented and the row goes
        back to pending, or to failed once retry_count reaches max_attempts.

        retry_count starts at the attempts already spent in-process. A row
        queued after an exhausted write therefore gets a single pass here
        before it is failed and left for manual replay. A row queued by a
        failed conflict check starts at 0 and gets max_attempts passes.
        """
        repository = self._require_repository()
        changes = await self.get_pending_changes(limit)
        result = PendingProcessResult()

        for change in changes:
            result.processed += 1
            await repository.set_status(change.id, FailedChangeStatus.PROCESSING)

            error: str | None = None
            try:
                ok = await processor(change)
                if not ok:
                    error = "Spreadsheet write reported failure"
            except Exception as exc:
                ok = False
                error = str(exc)

            if ok:
                await repository.set_status(change.id, FailedChangeStatus.COMPLETED)
                result.succeeded += 1
                continue

            exhausted = change.retry_count + 1 >= self._config.max_attempts
            await repository.set_status(
                change.id,
                FailedChangeStatus.FAILED if exhausted else FailedChangeStatus.PENDING,
                error=error,
                increment_retry=True,
            )
            result.failed += 1
            logger.warning(
                "retry.pending_change_failed",
                change_id=change.id,
                entity_key=change.entity_key,
                field_name=change.field_name,
                exhausted=exhausted,
                error=error,
            )

        logger.info(
            "retry.pending_processed",
            processed=result.processed,
            succeeded=result.succeeded,
            failed=result.failed,
        )
        return result

    async def replay_failed_change(
        self,
        change_id: int,
        processor: FailedChangeProcessor,
    ) -> bool:
        """Manually replay one row. The row is deleted only on success.

        Raises:
            ValueError: If no row has the given id.
        """
        repository = self._require_repository()
        change = await repository.get(change_id)
        if change is None:
            raise ValueError(f"Pending sync change '{change_id}' not found")

        try:
            ok = await processor(change)
            error = None if ok else "Spreadsheet write reported failure"
        except Exception as exc:
            ok = False
            error = str(exc)

        if ok:
            await repository.delete(change_id)
            logger.info("retry.change_replayed", change_id=change_id)
            return True

        await repository.set_status(
            change_id, FailedChangeStatus(change.status), error=error, increment_retry=True
        )
        logger.warning("retry.replay_failed", change_id=change_id, error=error)
        return False

    async def cleanup(self, older_than_days: int = 7) -> int:
        """Delete completed and failed rows older than the cutoff.

        Pending and processing rows are kept whatever their age. Returns the
        number of rows removed.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
        removed = await self._require_repository().delete_settled_before(cutoff)
        logger.info("retry.cleanup", removed=removed, older_than_days=older_than_days)
        return removed
