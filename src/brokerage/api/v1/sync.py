"""Operational endpoints for the sheet sync engine.

Queue counters, inspection of the failed-change table, and manual replay
of a single failed change.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import BaseModel

from src.brokerage.sync.container import SyncStack
from src.brokerage.sync.schemas import FailedChangeRead, FailedChangeStatus, QueueStats

router = APIRouter(prefix="/sync", tags=["sync"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class ReplayResponse(BaseModel):
    """Result of a manual replay."""

    change_id: int
    replayed: bool


# ── Helpers ──────────────────────────────────────────────────────────────────


def _get_sync_stack(request: Request) -> SyncStack:
    """Get the sync stack from app.state, or raise 503."""
    stack = getattr(request.app.state, "sync_stack", None)
    if stack is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sheet sync not available",
        )
    return stack


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.get("/queue", response_model=QueueStats)
async def queue_stats(request: Request) -> QueueStats:
    """Current SyncQueue counters."""
    return _get_sync_stack(request).queue.stats()


@router.get("/failed-changes", response_model=list[FailedChangeRead])
async def list_failed_changes(
    request: Request,
    change_status: FailedChangeStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[FailedChangeRead]:
    """Rows of the failed-change table, oldest first."""
    stack = _get_sync_stack(request)
    return await stack.retry_handler.list_failed_changes(status=change_status, limit=limit)


@router.post("/failed-changes/{change_id}/replay", response_model=ReplayResponse)
async def replay_failed_change(change_id: int, request: Request) -> ReplayResponse:
    """Write one failed change to its sheet now. The row is deleted on success."""
    stack = _get_sync_stack(request)
    try:
        replayed = await stack.retry_handler.replay_failed_change(
            change_id, stack.coordinator.apply_failed_change
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return ReplayResponse(change_id=change_id, replayed=replayed)
