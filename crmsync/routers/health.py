"""Health and status endpoints."""

from datetime import UTC, datetime
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from crmsync.config import get_settings
from crmsync.database import get_db
from crmsync.models import Candidate, SyncRun, SyncStatus

router = APIRouter(tags=["health"])
settings = get_settings()


class SyncStatusSummary(BaseModel):
    """Where the contact sync stands."""

    last_run_status: str | None = None
    last_run_phase: str | None = None
    last_run_started_at: datetime | None = None
    last_completed_at: datetime | None = None
    running: bool = False


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: datetime
    candidate_count: int
    contact_sync: SyncStatusSummary


@router.get("/health", response_model=HealthResponse)
async def health_check(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> HealthResponse:
    """
    Health check endpoint with sync status.

    Returns the local candidate count and the state of the latest contact sync.
    """
    count_result = await db.execute(select(func.count(Candidate.id)))
    candidate_count = count_result.scalar() or 0

    latest_result = await db.execute(
        select(SyncRun)
        .where(SyncRun.sync_type == settings.sync_type)
        .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
        .limit(1)
    )
    latest = latest_result.scalar_one_or_none()

    completed_result = await db.execute(
        select(func.max(SyncRun.completed_at)).where(
            SyncRun.sync_type == settings.sync_type,
            SyncRun.status == SyncStatus.COMPLETED,
        )
    )

    summary = SyncStatusSummary(
        last_run_status=latest.status if latest else None,
        last_run_phase=latest.phase if latest else None,
        last_run_started_at=latest.started_at if latest else None,
        last_completed_at=completed_result.scalar(),
        running=bool(latest and latest.status == SyncStatus.RUNNING),
    )

    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(UTC),
        candidate_count=candidate_count,
        contact_sync=summary,
    )


@router.get("/ready")
async def readiness_check() -> dict:
    """Simple readiness probe for container orchestration."""
    return {"status": "ready"}


@router.get("/live")
async def liveness_check() -> dict:
    """Simple liveness probe for container orchestration."""
    return {"status": "alive"}
