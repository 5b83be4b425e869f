"""Seller service: sync-aware updates plus staff name resolution."""

from __future__ import annotations

from typing import Any

from src.brokerage.sellers.employees import EmployeeDirectory
from src.brokerage.sellers.repository import SellerRepository
from src.brokerage.sync.conflicts import ConflictResolver
from src.brokerage.sync.orchestrator import EntitySyncService
from src.brokerage.sync.outbox import SyncOutboxRepository
from src.brokerage.sync.queue import SyncQueue
from src.brokerage.sync.retry import RetryHandler
from src.brokerage.sync.schemas import EntityType
from src.brokerage.sync.writers import SpreadsheetSyncService


class SellerService(EntitySyncService):
    """Sellers mirrored to the seller sheet.

    Returned records carry visit_acquirer_name, resolved from the
    visit_acquirer initials through the employee directory.
    """

    def __init__(
        self,
        repository: SellerRepository,
        writer: SpreadsheetSyncService,
        retry_handler: RetryHandler,
        employees: EmployeeDirectory,
        outbox: SyncOutboxRepository | None = None,
        queue: SyncQueue | None = None,
    ) -> None:
        super().__init__(
            EntityType.SELLER,
            repository,
            writer,
            ConflictResolver(writer),
            retry_handler,
            outbox=outbox,
            queue=queue,
        )
        self._employees = employees

    async def _present(self, entity: dict[str, Any]) -> dict[str, Any]:
        return {
            **entity,
            "visit_acquirer_name": await self._employees.get_name(entity.get("visit_acquirer")),
        }
