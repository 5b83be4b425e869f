"""Async repositories for sheet-mirrored entities and the retry queue.

Provides:
- SyncedEntityRepository: CRUD plus sync bookkeeping for one entity table,
  specialised by SellerRepository and BuyerRepository
- FailedChangeRepository: pending_sync_changes rows for the reconciliation job

Both use the session_factory callable pattern. Methods that must share a
transaction with other writes accept an optional session; when omitted
they open and commit their own.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any

import structlog
from sqlalchemy import Date, DateTime, Sequence, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.brokerage.core.database import Base
from src.brokerage.sync.models import FailedChangeModel
from src.brokerage.sync.schemas import (
    FailedChangeCreate,
    FailedChangeRead,
    FailedChangeStatus,
    SyncStatus,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]

# Columns callers may never set through update_fields()
BOOKKEEPING_FIELDS = frozenset({
    "id",
    "created_at",
    "updated_at",
    "last_synced_at",
    "sync_status",
    "sync_error",
    "sheet_snapshot",
})


def _parse_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _coerce(column_type: Any, value: Any) -> Any:
    """Convert ISO strings from API payloads for date/timestamp columns."""
    if not isinstance(value, str) or not value:
        return value if value != "" else None
    if isinstance(column_type, DateTime):
        return datetime.fromisoformat(value)
    if isinstance(column_type, Date):
        return date.fromisoformat(value[:10])
    return value


class SyncedEntityRepository:
    """Persistence for one sheet-mirrored entity table.

    Records are exchanged as plain dicts keyed by column name, with the
    primary key rendered as a string.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        model: SQLAlchemy model class carrying SyncBookkeepingMixin.
        key_field: Business key column (seller_number / buyer_number).
        key_sequence: Database sequence the business key is drawn from.
        key_format: Renders the sequence value as the business key.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        model: type[Base],
        key_field: str,
        key_sequence: Sequence,
        key_format: Callable[[int], str] = str,
    ) -> None:
        self._session_factory = session_factory
        self._model = model
        self._key_field = key_field
        self._key_sequence = key_sequence
        self._key_format = key_format

    @property
    def key_field(self) -> str:
        return self._key_field

    def _to_dict(self, model: Any) -> dict[str, Any]:
        record = {
            column.key: getattr(model, column.key)
            for column in self._model.__table__.columns
        }
        record["id"] = str(record["id"])
        return record

    def _column_values(self, values: dict[str, Any]) -> dict[str, Any]:
        columns = self._model.__table__.columns
        return {
            name: _coerce(columns[name].type, value)
            for name, value in values.items()
            if name in columns
        }

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Session committed when the block exits cleanly."""
        async for session in self._session_factory():
            yield session
            await session.commit()

    @asynccontextmanager
    async def _scope(self, session: AsyncSession | None) -> AsyncIterator[AsyncSession]:
        if session is not None:
            yield session
            return
        async with self.transaction() as own:
            yield own

    async def _load(self, session: AsyncSession, entity_id: str) -> Any | None:
        pk = _parse_uuid(entity_id)
        if pk is None:
            return None
        return await session.get(self._model, pk)

    # ── Reads ───────────────────────────────────────────────────────────

    async def get(self, entity_id: str) -> dict[str, Any] | None:
        """Fetch one record by primary key, None if absent."""
        async for session in self._session_factory():
            model = await self._load(session, entity_id)
            return self._to_dict(model) if model is not None else None

    async def get_by_key(self, key: str) -> dict[str, Any] | None:
        """Fetch one record by business key."""
        async for session in self._session_factory():
            stmt = select(self._model).where(
                getattr(self._model, self._key_field) == key
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return self._to_dict(model) if model is not None else None

    async def list_unsynced(self, limit: int = 100) -> list[dict[str, Any]]:
        """Records never synced or whose last sync did not succeed."""
        async for session in self._session_factory():
            stmt = (
                select(self._model)
                .where(
                    or_(
                        self._model.last_synced_at.is_(None),
                        self._model.sync_status != SyncStatus.SYNCED.value,
                    )
                )
                .order_by(self._model.created_at)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [self._to_dict(m) for m in result.scalars().all()]

    # ── Writes ──────────────────────────────────────────────────────────

    async def create(
        self,
        values: dict[str, Any],
        session: AsyncSession | None = None,
    ) -> dict[str, Any]:
        """Insert a record with a freshly allocated business key.

        Any key in values is ignored.
        """
        async with self._scope(session) as active:
            next_value = await active.scalar(select(self._key_sequence.next_value()))
            data = self._column_values(
                {k: v for k, v in values.items() if k not in BOOKKEEPING_FIELDS}
            )
            data[self._key_field] = self._key_format(int(next_value))
            model = self._model(**data, sheet_snapshot={})
            active.add(model)
            await active.flush()
            await active.refresh(model)
            logger.info(
                "entity.created",
                table=self._model.__tablename__,
                entity_id=str(model.id),
                key=data[self._key_field],
            )
            return self._to_dict(model)

    async def update_fields(
        self,
        entity_id: str,
        values: dict[str, Any],
        session: AsyncSession | None = None,
    ) -> dict[str, Any] | None:
        """Apply a partial update. Returns the updated record, None if absent."""
        async with self._scope(session) as active:
            model = await self._load(active, entity_id)
            if model is None:
                return None
            for name, value in self._column_values(values).items():
                setattr(model, name, value)
            await active.flush()
            await active.refresh(model)
            return self._to_dict(model)

    async def mark_synced(
        self,
        entity_id: str,
        snapshot_updates: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Record a successful sheet write: timestamp, status and snapshot."""
        async with self.transaction() as session:
            model = await self._load(session, entity_id)
            if model is None:
                return None
            model.last_synced_at = datetime.now(timezone.utc)
            model.sync_status = SyncStatus.SYNCED.value
            model.sync_error = None
            # Reassign so the JSON column is flagged dirty
            model.sheet_snapshot = {**(model.sheet_snapshot or {}), **(snapshot_updates or {})}
            await session.flush()
            await session.refresh(model)
            return self._to_dict(model)

    async def mark_sync_status(
        self,
        entity_id: str,
        status: SyncStatus,
        error: str | None = None,
    ) -> dict[str, Any] | None:
        """Record a non-success outcome. last_synced_at is left unchanged."""
        async with self.transaction() as session:
            model = await self._load(session, entity_id)
            if model is None:
                return None
            model.sync_status = status.value
            model.sync_error = error
            await session.flush()
            await session.refresh(model)
            return self._to_dict(model)


# ── Retry Queue ─────────────────────────────────────────────────────────────


def _model_to_failed_change(model: FailedChangeModel) -> FailedChangeRead:
    return FailedChangeRead(
        id=model.id,
        entity_type=model.entity_type,
        entity_key=model.entity_key,
        field_name=model.field_name,
        old_value=model.old_value,
        new_value=model.new_value,
        retry_count=model.retry_count or 0,
        last_error=model.last_error,
        status=model.status,
        created_at=model.created_at,
        attempted_at=model.attempted_at,
    )


class FailedChangeRepository:
    """CRUD for pending_sync_changes.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def add(self, data: FailedChangeCreate) -> FailedChangeRead:
        async for session in self._session_factory():
            model = FailedChangeModel(
                entity_type=data.entity_type.value,
                entity_key=data.entity_key,
                field_name=data.field_name,
                old_value=data.old_value,
                new_value=data.new_value,
                retry_count=data.retry_count,
                last_error=data.last_error,
                status=FailedChangeStatus.PENDING.value,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_failed_change(model)

    async def get(self, change_id: int) -> FailedChangeRead | None:
        async for session in self._session_factory():
            model = await session.get(FailedChangeModel, change_id)
            return _model_to_failed_change(model) if model is not None else None

    async def list_changes(
        self,
        status: FailedChangeStatus | None = None,
        limit: int = 100,
    ) -> list[FailedChangeRead]:
        """Rows oldest first, optionally filtered by status."""
        async for session in self._session_factory():
            stmt = select(FailedChangeModel).order_by(FailedChangeModel.created_at)
            if status is not None:
                stmt = stmt.where(FailedChangeModel.status == status.value)
            result = await session.execute(stmt.limit(limit))
            return [_model_to_failed_change(m) for m in result.scalars().all()]

    async def set_status(
        self,
        change_id: int,
        status: FailedChangeStatus,
        error: str | None = None,
        increment_retry: bool = False,
    ) -> None:
        async for session in self._session_factory():
            model = await session.get(FailedChangeModel, change_id)
            if model is None:
                return
            model.status = status.value
            model.attempted_at = datetime.now(timezone.utc)
            if error is not None:
                model.last_error = error
            if increment_retry:
                model.retry_count = (model.retry_count or 0) + 1
            await session.commit()

    async def delete(self, change_id: int) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                delete(FailedChangeModel).where(FailedChangeModel.id == change_id)
            )
            await session.commit()
            return result.rowcount > 0

    async def delete_settled_before(self, cutoff: datetime) -> int:
        """Delete completed and failed rows created before cutoff."""
        async for session in self._session_factory():
            result = await session.execute(
                delete(FailedChangeModel).where(
                    FailedChangeModel.status.in_(
                        [FailedChangeStatus.COMPLETED.value, FailedChangeStatus.FAILED.value]
                    ),
                    FailedChangeModel.created_at < cutoff,
                )
            )
            await session.commit()
            return result.rowcount
