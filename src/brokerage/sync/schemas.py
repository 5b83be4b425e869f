"""Pydantic schemas for the spreadsheet sync engine.

Defines all structured types that flow between the queue, the conflict
resolver, the retry handler and the write services:
- Enums: SyncTaskType, SyncStatus, EntityType, ConflictStrategy,
  FailedChangeStatus, OutboxStatus
- Queue payloads: SyncTask, QueueStats
- Results: SyncResult, WriteResult, BatchWriteResult, BatchSyncResult,
  RetryResult, UpdateWithSyncResult, PendingProcessResult
- Conflicts: ConflictInfo, ConflictCheckResult
- Retry queue rows: FailedChangeCreate, FailedChangeRead
- Outbox rows: OutboxEntry
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class SyncTaskType(str, Enum):
    """Kind of change a sync task propagates to the sheet."""

    CREATE = "create"
    UPDATE = "update"


class SyncStatus(str, Enum):
    """Sync state stored on the entity row and reported to callers."""

    SYNCED = "synced"
    PENDING = "pending"
    FAILED = "failed"
    CONFLICT = "conflict"


class EntityType(str, Enum):
    """Entities mirrored to a spreadsheet."""

    SELLER = "seller"
    BUYER = "buyer"


class ConflictStrategy(str, Enum):
    """How an operator chose to settle a detected conflict."""

    DB_WINS = "db_wins"
    SPREADSHEET_WINS = "spreadsheet_wins"
    MANUAL = "manual"


class FailedChangeStatus(str, Enum):
    """Lifecycle of a pending_sync_changes row."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class OutboxStatus(str, Enum):
    """Lifecycle of a sync_outbox row."""

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


# ── Queue Payloads ──────────────────────────────────────────────────────────


class SyncTask(BaseModel):
    """One queued intent to propagate a create/update to the sheet.

    changed_fields/expected_values carry what the worker needs to run the
    conflict check after the HTTP request has already returned.
    """

    type: SyncTaskType
    entity_type: EntityType
    entity_id: str
    enqueued_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    changed_fields: dict[str, Any] = Field(default_factory=dict)
    expected_values: dict[str, Any] = Field(default_factory=dict)
    force: bool = False
    user_id: str | None = None
    user_email: str | None = None
    outbox_id: int | None = None

    @property
    def lane_key(self) -> tuple[str, str]:
        """Serialization key: tasks sharing it run strictly in enqueue order."""
        return (self.entity_type.value, self.entity_id)


class QueueStats(BaseModel):
    """Snapshot of SyncQueue counters."""

    pending: int = 0
    in_flight: int = 0
    processed: int = 0
    failed: int = 0
    lanes: int = 0


# ── Conflicts ───────────────────────────────────────────────────────────────


class ConflictInfo(BaseModel):
    """A field whose sheet value diverged from what the last sync recorded."""

    field_name: str
    expected_value: Any = None
    actual_spreadsheet_value: Any = None
    local_new_value: Any = None
    last_synced_at: datetime | None = None


class ConflictCheckResult(BaseModel):
    """Outcome of ConflictResolver.check_conflict."""

    has_conflict: bool = False
    conflicts: list[ConflictInfo] = Field(default_factory=list)
    can_auto_resolve: bool = True


# ── Results ─────────────────────────────────────────────────────────────────


class SyncResult(BaseModel):
    """Uniform outcome reported for one entity's sync attempt."""

    success: bool
    sync_status: SyncStatus
    error: str | None = None
    conflict: list[ConflictInfo] | None = None
    attempts: int = 0


class WriteResult(BaseModel):
    """Outcome of a single-row spreadsheet write."""

    success: bool
    row_number: int | None = None
    error: str | None = None
    row_not_found: bool = False
    operation: SyncTaskType | None = None


class BatchWriteResult(BaseModel):
    """Outcome of writing field updates for several entities."""

    success: bool
    results: list[WriteResult] = Field(default_factory=list)
    total_updated: int = 0
    total_failed: int = 0


class BatchSyncResult(BaseModel):
    """Outcome of full-record sync for several entities."""

    success: bool
    total_rows: int = 0
    success_count: int = 0
    failure_count: int = 0
    errors: list[dict[str, str]] = Field(default_factory=list)


class RetryResult(BaseModel):
    """Outcome of RetryHandler.execute_with_retry."""

    success: bool
    attempts: int
    result: Any = None
    error: str | None = None
    terminal: bool = False


class UpdateWithSyncResult(BaseModel):
    """Entity as stored after the call, plus how far the change got."""

    entity: dict[str, Any]
    sync_result: SyncResult


class PendingProcessResult(BaseModel):
    """Counters from one reconciliation pass over pending_sync_changes."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0


# ── Retry Queue Rows ────────────────────────────────────────────────────────


class FailedChangeCreate(BaseModel):
    """A field change that exhausted in-process retries."""

    entity_type: EntityType
    entity_key: str
    field_name: str
    old_value: str | None = None
    new_value: str | None = None
    retry_count: int = 0
    last_error: str | None = None


class FailedChangeRead(FailedChangeCreate):
    """Persisted pending_sync_changes row."""

    id: int
    status: FailedChangeStatus = FailedChangeStatus.PENDING
    created_at: datetime | None = None
    attempted_at: datetime | None = None


# ── Outbox Rows ─────────────────────────────────────────────────────────────


class OutboxEntry(BaseModel):
    """Claimed sync_outbox row. payload is a serialised SyncTask."""

    id: int
    entity_type: EntityType
    entity_id: str
    task_type: SyncTaskType
    payload: dict[str, Any] = Field(default_factory=dict)
    status: OutboxStatus = OutboxStatus.PENDING
    attempts: int = 0
    created_at: datetime | None = None
