"""Buyer service: sync-aware updates for the buyer sheet."""

from __future__ import annotations

from src.brokerage.buyers.repository import BuyerRepository
from src.brokerage.sync.conflicts import ConflictResolver
from src.brokerage.sync.orchestrator import EntitySyncService
from src.brokerage.sync.outbox import SyncOutboxRepository
from src.brokerage.sync.queue import SyncQueue
from src.brokerage.sync.retry import RetryHandler
from src.brokerage.sync.schemas import EntityType
from src.brokerage.sync.writers import BuyerWriteService


class BuyerService(EntitySyncService):
    """Buyers mirrored to the buyer sheet, keyed by buyer_number."""

    def __init__(
        self,
        repository: BuyerRepository,
        writer: BuyerWriteService,
        retry_handler: RetryHandler,
        outbox: SyncOutboxRepository | None = None,
        queue: SyncQueue | None = None,
    ) -> None:
        super().__init__(
            EntityType.BUYER,
            repository,
            writer,
            ConflictResolver(writer),
            retry_handler,
            outbox=outbox,
            queue=queue,
        )
