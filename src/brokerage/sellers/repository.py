"""Seller and employee persistence."""

from __future__ import annotations

from sqlalchemy import select

from src.brokerage.sellers.models import EmployeeModel, SellerModel, seller_number_seq
from src.brokerage.sync.repository import SessionFactory, SyncedEntityRepository


def format_seller_number(value: int) -> str:
    """Sequence value -> seller number as staff write it (7 -> AA00007)."""
    return f"AA{value:05d}"


class SellerRepository(SyncedEntityRepository):
    """Sellers keyed by seller_number."""

    def __init__(self, session_factory: SessionFactory) -> None:
        super().__init__(
            session_factory,
            SellerModel,
            key_field="seller_number",
            key_sequence=seller_number_seq,
            key_format=format_seller_number,
        )


class EmployeeRepository:
    """Read access to the staff directory.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def load_initials_map(self) -> dict[str, str]:
        """{initials: name} for active employees."""
        async for session in self._session_factory():
            stmt = select(EmployeeModel.initials, EmployeeModel.name).where(
                EmployeeModel.is_active.is_(True)
            )
            result = await session.execute(stmt)
            return {initials: name for initials, name in result.all()}
