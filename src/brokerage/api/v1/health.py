"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.brokerage.config import get_settings
from src.brokerage.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database connectivity and whether the sync stack is running."""
    checks: dict = {"database": "ok", "sync": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    stack = getattr(request.app.state, "sync_stack", None)
    if stack is None:
        checks["sync"] = "disabled"
    elif not stack.relay.running:
        checks["sync"] = "stopped"

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 when the database answers, 503 otherwise.

    A disabled or stopped sync stack is reported but does not fail the
    check; edits still land in the database and the outbox.
    """
    checks = await _check_dependencies(request)
    healthy = checks.get("database") == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if healthy else "degraded",
            "checks": checks,
        },
    )
