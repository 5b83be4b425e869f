"""FastAPI application factory.

Creates the app with logging middleware, lifespan events for database
initialization and the sheet sync stack, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from src.brokerage.api.middleware.logging import LoggingMiddleware
from src.brokerage.api.v1.router import router as v1_router
from src.brokerage.config import get_settings
from src.brokerage.core.database import close_db, init_db
from src.brokerage.core.logging import configure_structlog
from src.brokerage.sync.container import build_sync_stack


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB and sync stack on startup, drain on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Sync is failure-tolerant: without it, edits still commit to the
    # database and wait in sync_outbox for the next process that has it.
    app.state.sync_stack = None
    if settings.SYNC_ENABLED:
        try:
            stack = await build_sync_stack(settings)
            stack.start()
            app.state.sync_stack = stack
            log.info("sync.stack_started")
        except Exception:
            log.warning("sync.stack_init_failed", exc_info=True)
    else:
        log.info("sync.disabled")

    yield

    if app.state.sync_stack is not None:
        try:
            await app.state.sync_stack.shutdown()
        except Exception:
            log.warning("sync.stack_shutdown_failed", exc_info=True)
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Brokerage Back Office API",
        version="0.1.0",
        description="Seller and buyer records mirrored to the office spreadsheets",
        lifespan=lifespan,
    )

    app.add_middleware(LoggingMiddleware)
    app.include_router(v1_router)

    return app


app = create_app()
