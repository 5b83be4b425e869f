"""Database-to-spreadsheet sync engine.

Keeps seller and buyer rows in the office spreadsheets in step with the
database, which is the source of truth. Writes go to the database first;
the sheet is updated through a conflict check, bounded retries and a
durable queue of failed field changes.

Exports:
    SyncTask, SyncResult, SyncStatus: Task payloads and outcomes.
    ColumnMapper: Field <-> column translation and value formatting.
    ConflictResolver: Detects out-of-band sheet edits.
    RetryHandler, RetryConfig: Exponential backoff and failed-change queue.
    SyncQueue: Per-entity ordered, bounded-concurrency task runner.
    SpreadsheetSyncService, BuyerWriteService: Sheet writers.
"""

from __future__ import annotations

from src.brokerage.sync.column_mapping import ColumnMapper
from src.brokerage.sync.errors import (
    NonRetryableSyncError,
    RowNotFoundError,
    SyncError,
    TransientSyncError,
)
from src.brokerage.sync.schemas import (
    ConflictStrategy,
    EntityType,
    SyncResult,
    SyncStatus,
    SyncTask,
    SyncTaskType,
)

__all__ = [
    "BuyerWriteService",
    "ColumnMapper",
    "ConflictResolver",
    "ConflictStrategy",
    "EntityType",
    "NonRetryableSyncError",
    "RetryConfig",
    "RetryHandler",
    "RowNotFoundError",
    "SpreadsheetSyncService",
    "SyncError",
    "SyncQueue",
    "SyncResult",
    "SyncStatus",
    "SyncTask",
    "SyncTaskType",
    "TransientSyncError",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load services to avoid circular imports with entity packages."""
    if name == "ConflictResolver":
        from src.brokerage.sync.conflicts import ConflictResolver

        return ConflictResolver
    if name in ("RetryConfig", "RetryHandler"):
        from src.brokerage.sync import retry

        return getattr(retry, name)
    if name == "SyncQueue":
        from src.brokerage.sync.queue import SyncQueue

        return SyncQueue
    if name in ("BuyerWriteService", "SpreadsheetSyncService"):
        from src.brokerage.sync import writers

        return getattr(writers, name)
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
