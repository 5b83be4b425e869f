"""Buyer persistence model, mirrored to the buyer sheet (買主リスト)."""

from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import BigInteger, Date, DateTime, Sequence, String, Text, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.brokerage.core.database import Base
from src.brokerage.sync.models import SyncBookkeepingMixin

buyer_number_seq = Sequence("buyer_number_seq", metadata=Base.metadata)


class BuyerModel(SyncBookkeepingMixin, Base):
    """A prospective buyer and the property inquiry that brought them in.

    buyer_number is the business key shared with the sheet. It is never
    changed once assigned.
    """

    __tablename__ = "buyers"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    buyer_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    property_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    latest_status: Mapped[str | None] = mapped_column(String(200), nullable=True)
    inquiry_source: Mapped[str | None] = mapped_column(String(100), nullable=True)
    reception_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    desired_area: Mapped[str | None] = mapped_column(String(200), nullable=True)
    price: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    budget: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    next_call_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    viewing_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    initial_assignee: Mapped[str | None] = mapped_column(String(20), nullable=True)
    inquiry_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )
