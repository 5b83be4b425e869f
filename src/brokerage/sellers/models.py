"""Seller persistence models.

- SellerModel: property owners requesting a valuation, mirrored to the
  seller sheet (売主リスト) keyed by seller_number (AA00001 style)
- EmployeeModel: staff directory used to resolve initials to names
"""

from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Sequence,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.brokerage.core.database import Base
from src.brokerage.sync.models import SyncBookkeepingMixin

# Business keys are allocated by the database so concurrent creates can
# never hand out the same seller_number.
seller_number_seq = Sequence("seller_number_seq", metadata=Base.metadata)


class SellerModel(SyncBookkeepingMixin, Base):
    """A seller lead and its valuation/visit state."""

    __tablename__ = "sellers"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    seller_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    property_address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    site: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str | None] = mapped_column(String(100), nullable=True)
    confidence: Mapped[str | None] = mapped_column(String(20), nullable=True)
    valuation_amount_1: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    valuation_amount_2: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    valuation_amount_3: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    visit_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    visit_time: Mapped[str | None] = mapped_column(String(20), nullable=True)
    visit_acquirer: Mapped[str | None] = mapped_column(String(20), nullable=True)
    phone_assignee: Mapped[str | None] = mapped_column(String(20), nullable=True)
    contact_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    inquiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )


class EmployeeModel(Base):
    """Staff member; sheets refer to staff by initials."""

    __tablename__ = "employees"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    initials: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default="true")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
