"""Buyer persistence."""

from __future__ import annotations

from src.brokerage.buyers.models import BuyerModel, buyer_number_seq
from src.brokerage.sync.repository import SessionFactory, SyncedEntityRepository


class BuyerRepository(SyncedEntityRepository):
    """Buyers keyed by buyer_number (plain integers on the sheet)."""

    def __init__(self, session_factory: SessionFactory) -> None:
        super().__init__(
            session_factory,
            BuyerModel,
            key_field="buyer_number",
            key_sequence=buyer_number_seq,
        )
