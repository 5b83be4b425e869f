"""Sync engine persistence models.

- SyncBookkeepingMixin: columns every sheet-mirrored entity row carries
- FailedChangeModel: pending_sync_changes, one row per field change that
  exhausted in-process retries (read by the reconciliation job)
- SyncOutboxModel: sync_outbox, durable record of sync intent written in
  the same transaction as the entity change
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSON
from sqlalchemy.orm import Mapped, mapped_column

from src.brokerage.core.database import Base


class SyncBookkeepingMixin:
    """Sync state columns shared by sellers and buyers.

    sheet_snapshot maps field name -> the value (in sheet format) last
    written to or confirmed on the sheet. It is the expected value for
    conflict detection when present.
    """

    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    sync_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    sheet_snapshot: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )


class FailedChangeModel(Base):
    """A field change waiting for the reconciliation job."""

    __tablename__ = "pending_sync_changes"
    __table_args__ = (
        Index("ix_pending_sync_changes_status_created", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_key: Mapped[str] = mapped_column(String(50), nullable=False)
    field_name: Mapped[str] = mapped_column(String(100), nullable=False)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default="pending", server_default="pending"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    attempted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class SyncOutboxModel(Base):
    """Durable sync intent, relayed into the in-memory SyncQueue."""

    __tablename__ = "sync_outbox"
    __table_args__ = (
        Index("ix_sync_outbox_status_id", "status", "id"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    task_type: Mapped[str] = mapped_column(String(20), nullable=False)
    payload: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    status: Mapped[str] = mapped_column(
        String(20), default="pending", server_default="pending"
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
