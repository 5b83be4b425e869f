"""Wiring for the sync engine.

build_sync_stack() authenticates the Sheets clients and hands them to
assemble_sync_stack(), which builds everything else from settings and a
session factory. Tests call assemble_sync_stack() directly with fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from src.brokerage.buyers.repository import BuyerRepository
from src.brokerage.buyers.service import BuyerService
from src.brokerage.config import Settings
from src.brokerage.core.database import get_session
from src.brokerage.sellers.employees import EmployeeDirectory
from src.brokerage.sellers.repository import EmployeeRepository, SellerRepository
from src.brokerage.sellers.service import SellerService
from src.brokerage.services.gsuite.auth import GSuiteAuthManager
from src.brokerage.services.gsuite.rate_limit import SheetsRateLimiter
from src.brokerage.services.gsuite.sheets import GoogleSheetsClient
from src.brokerage.sync.errors import SheetsAuthenticationError
from src.brokerage.sync.orchestrator import SyncCoordinator
from src.brokerage.sync.outbox import OutboxRelay, SyncOutboxRepository
from src.brokerage.sync.queue import SyncQueue
from src.brokerage.sync.repository import FailedChangeRepository, SessionFactory
from src.brokerage.sync.retry import RetryConfig, RetryHandler
from src.brokerage.sync.writers import BuyerWriteService, SpreadsheetClient, SpreadsheetSyncService

logger = structlog.get_logger(__name__)


@dataclass
class SyncStack:
    """Long-lived sync components shared by the app and scripts."""

    queue: SyncQueue
    coordinator: SyncCoordinator
    relay: OutboxRelay
    retry_handler: RetryHandler
    sellers: SellerService
    buyers: BuyerService
    employees: EmployeeDirectory

    def start(self) -> None:
        self.relay.start()

    async def shutdown(self) -> None:
        """Stop relaying, then let queued tasks finish."""
        await self.relay.stop()
        await self.queue.close()


def assemble_sync_stack(
    settings: Settings,
    seller_client: SpreadsheetClient,
    buyer_client: SpreadsheetClient,
    session_factory: SessionFactory = get_session,
    **retry_kwargs: Any,
) -> SyncStack:
    """Build the stack around already-authenticated sheet clients.

    Args:
        settings: Application settings.
        seller_client: Client for the seller sheet.
        buyer_client: Client for the buyer sheet.
        session_factory: Async callable that yields AsyncSession instances.
        **retry_kwargs: Extra RetryHandler arguments (e.g. sleep).
    """
    retry_handler = RetryHandler(
        RetryConfig.from_settings(settings),
        FailedChangeRepository(session_factory),
        **retry_kwargs,
    )
    outbox = SyncOutboxRepository(session_factory)
    employees = EmployeeDirectory(
        EmployeeRepository(session_factory).load_initials_map,
        ttl_seconds=settings.EMPLOYEE_CACHE_TTL_SECONDS,
    )

    coordinator = SyncCoordinator()
    queue = SyncQueue(coordinator.process_task, settings.SYNC_QUEUE_MAX_CONCURRENCY)

    sellers = SellerService(
        SellerRepository(session_factory),
        SpreadsheetSyncService(seller_client),
        retry_handler,
        employees,
        outbox=outbox,
        queue=queue,
    )
    buyers = BuyerService(
        BuyerRepository(session_factory),
        BuyerWriteService(buyer_client),
        retry_handler,
        outbox=outbox,
        queue=queue,
    )
    coordinator.register(sellers)
    coordinator.register(buyers)

    relay = OutboxRelay(
        outbox,
        queue,
        poll_interval=settings.SYNC_OUTBOX_POLL_INTERVAL_SECONDS,
        batch_size=settings.SYNC_OUTBOX_BATCH_SIZE,
        stale_after=settings.SYNC_OUTBOX_STALE_AFTER_SECONDS,
    )

    return SyncStack(
        queue=queue,
        coordinator=coordinator,
        relay=relay,
        retry_handler=retry_handler,
        sellers=sellers,
        buyers=buyers,
        employees=employees,
    )


async def build_sync_stack(
    settings: Settings,
    session_factory: SessionFactory = get_session,
) -> SyncStack:
    """Authenticate both sheet clients and assemble the stack.

    Raises:
        SheetsAuthenticationError: If no credentials are configured or the
            Sheets service cannot be built.
        ValueError: If a spreadsheet ID is missing.
    """
    sa_path = settings.get_service_account_path()
    if not sa_path:
        raise SheetsAuthenticationError("No Google service account configured")

    auth_manager = GSuiteAuthManager(service_account_file=sa_path)
    # One bucket for both sheets: the quota is per project
    rate_limiter = SheetsRateLimiter(
        max_tokens=settings.SHEETS_RATE_LIMIT_REQUESTS,
        window_seconds=settings.SHEETS_RATE_LIMIT_WINDOW_SECONDS,
    )

    seller_client = GoogleSheetsClient(
        auth_manager,
        settings.SELLER_SPREADSHEET_ID,
        settings.SELLER_SHEET_NAME,
        rate_limiter,
    )
    buyer_client = GoogleSheetsClient(
        auth_manager,
        settings.BUYER_SPREADSHEET_ID,
        settings.BUYER_SHEET_NAME,
        rate_limiter,
    )
    await seller_client.authenticate()
    await buyer_client.authenticate()

    logger.info(
        "sync_stack.built",
        seller_sheet=settings.SELLER_SHEET_NAME,
        buyer_sheet=settings.BUYER_SHEET_NAME,
        max_concurrency=settings.SYNC_QUEUE_MAX_CONCURRENCY,
    )
    return assemble_sync_stack(settings, seller_client, buyer_client, session_factory)
