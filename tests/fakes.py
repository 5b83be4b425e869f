"""In-memory fakes for sync engine tests.

- FakeSheetsClient: worksheet implementing SpreadsheetClient, with
  per-operation failure injection and a call log
- InMemoryEntityRepository: dict-backed stand-in for SyncedEntityRepository
- InMemoryFailedChangeRepository: dict-backed pending_sync_changes
- RecordingSleep: sleep replacement that records requested delays
"""

from __future__ import annotations

import copy
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from src.brokerage.sync.column_mapping import BUYER_COLUMN_MAP, SELLER_COLUMN_MAP
from src.brokerage.sync.errors import ColumnMappingError
from src.brokerage.sync.repository import BOOKKEEPING_FIELDS
from src.brokerage.sync.schemas import (
    FailedChangeCreate,
    FailedChangeRead,
    FailedChangeStatus,
    SyncStatus,
)

# Column staff keep on the sheet that the engine never maps
UNMAPPED_HEADER = "備考"

BUYER_HEADERS = [*BUYER_COLUMN_MAP.values(), UNMAPPED_HEADER]
SELLER_HEADERS = [*SELLER_COLUMN_MAP.values(), UNMAPPED_HEADER]


# ── Fake Sheets Client ───────────────────────────────────────────────────────


class FakeSheetsClient:
    """In-memory worksheet. Data row i (0-based) lives at absolute row i + 2."""

    def __init__(self, headers: list[str], rows: list[dict[str, Any]] | None = None) -> None:
        self.headers = list(headers)
        self.rows: list[dict[str, Any]] = [dict(r) for r in rows or []]
        self.calls: list[tuple[str, Any]] = []
        self.header_cache_clears = 0
        self._failures: dict[str, list[Exception]] = {}

    def fail_next(self, operation: str, times: int = 1, exc: Exception | None = None) -> None:
        """Make the next `times` calls of operation raise."""
        error = exc or ConnectionError(f"{operation} unavailable")
        self._failures.setdefault(operation, []).extend([error] * times)

    def _maybe_fail(self, operation: str) -> None:
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def calls_to(self, operation: str) -> list[Any]:
        return [args for name, args in self.calls if name == operation]

    def row_for(self, header: str, value: Any) -> dict[str, Any] | None:
        for row in self.rows:
            if str(row.get(header, "")).strip() == str(value).strip():
                return row
        return None

    async def get_headers(self) -> list[str]:
        return list(self.headers)

    def clear_header_cache(self) -> None:
        self.header_cache_clears += 1

    async def read_row(self, row_index: int) -> dict[str, Any] | None:
        self.calls.append(("read_row", row_index))
        self._maybe_fail("read_row")
        offset = row_index - 2
        if offset < 0 or offset >= len(self.rows):
            return None
        row = self.rows[offset]
        return {h: row.get(h) if row.get(h) not in ("", None) else None for h in self.headers}

    async def find_row_by_column(self, header: str, value: Any) -> int | None:
        self.calls.append(("find_row_by_column", (header, value)))
        self._maybe_fail("find_row_by_column")
        if header not in self.headers:
            raise ColumnMappingError(f"Column '{header}' not found")
        for offset, row in enumerate(self.rows):
            if str(row.get(header, "")).strip() == str(value).strip():
                return offset + 2
        return None

    async def append_row(self, row: dict[str, Any]) -> None:
        self.calls.append(("append_row", dict(row)))
        self._maybe_fail("append_row")
        self.rows.append({h: row.get(h, "") for h in self.headers})

    def _apply(self, row_index: int, cells: dict[str, Any]) -> None:
        for header in cells:
            if header not in self.headers:
                raise ColumnMappingError(f"Column '{header}' not found")
        self.rows[row_index - 2].update(cells)

    async def update_cells(self, row_index: int, cells: dict[str, Any]) -> None:
        self.calls.append(("update_cells", (row_index, dict(cells))))
        self._maybe_fail("update_cells")
        if cells:
            self._apply(row_index, cells)

    async def batch_update(self, updates: list[tuple[int, dict[str, Any]]]) -> None:
        self.calls.append(("batch_update", [(i, dict(c)) for i, c in updates]))
        self._maybe_fail("batch_update")
        for row_index, cells in updates:
            self._apply(row_index, cells)


# ── In-Memory Repositories ───────────────────────────────────────────────────


class InMemoryEntityRepository:
    """Mirrors the SyncedEntityRepository API over a dict.

    `log` records write calls in order so tests can assert sequencing
    against the sheet client's call log.
    """

    def __init__(self, key_field: str, key_format=str, log: list | None = None) -> None:
        self._key_field = key_field
        self._key_format = key_format
        self._records: dict[str, dict[str, Any]] = {}
        self._next_key = 1
        self.log = log if log is not None else []
        self.transactions = 0

    @property
    def key_field(self) -> str:
        return self._key_field

    def seed(self, **values: Any) -> dict[str, Any]:
        """Insert a record directly, bypassing the call log."""
        record = {
            "id": str(uuid.uuid4()),
            "created_at": datetime.now(timezone.utc),
            "updated_at": None,
            "last_synced_at": None,
            "sync_status": None,
            "sync_error": None,
            "sheet_snapshot": {},
        }
        record.update(values)
        self._records[record["id"]] = record
        return copy.deepcopy(record)

    def raw(self, entity_id: str) -> dict[str, Any]:
        return self._records[entity_id]

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        yield object()

    async def get(self, entity_id: str) -> dict[str, Any] | None:
        record = self._records.get(entity_id)
        return copy.deepcopy(record) if record is not None else None

    async def get_by_key(self, key: str) -> dict[str, Any] | None:
        for record in self._records.values():
            if record.get(self._key_field) == key:
                return copy.deepcopy(record)
        return None

    async def list_unsynced(self, limit: int = 100) -> list[dict[str, Any]]:
        records = [
            copy.deepcopy(r)
            for r in self._records.values()
            if r["last_synced_at"] is None or r["sync_status"] != SyncStatus.SYNCED.value
        ]
        return records[:limit]

    async def create(self, values: dict[str, Any], session: Any = None) -> dict[str, Any]:
        self.log.append(("db.create", dict(values)))
        data = {k: v for k, v in values.items() if k not in BOOKKEEPING_FIELDS}
        data[self._key_field] = self._key_format(self._next_key)
        self._next_key += 1
        return self.seed(**data)

    async def update_fields(
        self, entity_id: str, values: dict[str, Any], session: Any = None
    ) -> dict[str, Any] | None:
        self.log.append(("db.update_fields", dict(values)))
        record = self._records.get(entity_id)
        if record is None:
            return None
        record.update(values)
        return copy.deepcopy(record)

    async def mark_synced(
        self, entity_id: str, snapshot_updates: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        self.log.append(("db.mark_synced", dict(snapshot_updates or {})))
        record = self._records.get(entity_id)
        if record is None:
            return None
        record["last_synced_at"] = datetime.now(timezone.utc)
        record["sync_status"] = SyncStatus.SYNCED.value
        record["sync_error"] = None
        record["sheet_snapshot"] = {**record["sheet_snapshot"], **(snapshot_updates or {})}
        return copy.deepcopy(record)

    async def mark_sync_status(
        self, entity_id: str, status: SyncStatus, error: str | None = None
    ) -> dict[str, Any] | None:
        self.log.append(("db.mark_sync_status", status.value))
        record = self._records.get(entity_id)
        if record is None:
            return None
        record["sync_status"] = status.value
        record["sync_error"] = error
        return copy.deepcopy(record)


class InMemoryFailedChangeRepository:
    """Mirrors FailedChangeRepository over a dict."""

    def __init__(self) -> None:
        self.rows: dict[int, FailedChangeRead] = {}
        self._next_id = 1

    async def add(self, data: FailedChangeCreate) -> FailedChangeRead:
        row = FailedChangeRead(
            **data.model_dump(),
            id=self._next_id,
            created_at=datetime.now(timezone.utc),
        )
        self.rows[row.id] = row
        self._next_id += 1
        return row

    async def get(self, change_id: int) -> FailedChangeRead | None:
        return self.rows.get(change_id)

    async def list_changes(
        self, status: FailedChangeStatus | None = None, limit: int = 100
    ) -> list[FailedChangeRead]:
        rows = [r for r in self.rows.values() if status is None or r.status == status]
        return rows[:limit]

    async def set_status(
        self,
        change_id: int,
        status: FailedChangeStatus,
        error: str | None = None,
        increment_retry: bool = False,
    ) -> None:
        row = self.rows.get(change_id)
        if row is None:
            return
        updates: dict[str, Any] = {"status": status, "attempted_at": datetime.now(timezone.utc)}
        if error is not None:
            updates["last_error"] = error
        if increment_retry:
            updates["retry_count"] = row.retry_count + 1
        self.rows[change_id] = row.model_copy(update=updates)

    async def delete(self, change_id: int) -> bool:
        return self.rows.pop(change_id, None) is not None

    async def delete_settled_before(self, cutoff: datetime) -> int:
        settled = (FailedChangeStatus.COMPLETED, FailedChangeStatus.FAILED)
        doomed = [
            r.id for r in self.rows.values() if r.status in settled and r.created_at < cutoff
        ]
        for change_id in doomed:
            del self.rows[change_id]
        return len(doomed)


class RecordingSleep:
    """Awaitable sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
