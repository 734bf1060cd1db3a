"""API routes for starting, cancelling and inspecting contact syncs."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from crmsync.schemas import (
    SyncCancelRequest,
    SyncCancelResponse,
    SyncRunOut,
    SyncRunsResponse,
    SyncStartRequest,
    SyncStartResponse,
)
from crmsync.services.sync_service import ContactSyncService, get_sync_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["sync"])

SyncService = Annotated[ContactSyncService, Depends(get_sync_service)]


@router.post(
    "/contacts",
    response_model=SyncStartResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_contact_sync(
    service: SyncService,
    body: SyncStartRequest | None = None,
) -> SyncStartResponse:
    """
    Start a full contact sync from Vtiger.

    The run is claimed before responding and continues in the background;
    follow it through /ws/sync or GET /sync/runs/latest. Returns 409 if a
    sync is already in progress.
    """
    started_by = body.started_by if body else None
    run = await service.start_sync_in_background(started_by=started_by)

    logger.info(f"Contact sync run #{run.id} started by {started_by or 'api'}")
    return SyncStartResponse(
        run_id=run.id,
        status=run.status,
        message="Contact sync started",
    )


@router.post("/contacts/cancel", response_model=SyncCancelResponse)
async def cancel_contact_sync(
    service: SyncService,
    body: SyncCancelRequest | None = None,
) -> SyncCancelResponse:
    """Mark the running contact sync as failed with a cancellation reason."""
    body = body or SyncCancelRequest()
    result = await service.cancel_sync(
        cancelled_by=body.cancelled_by,
        reason=body.reason or "Cancelled by operator",
    )
    return SyncCancelResponse(cancelled=result.cancelled, message=result.message)


@router.get("/runs/latest", response_model=SyncRunOut)
async def latest_sync_run(service: SyncService) -> SyncRunOut:
    """Get the most recent contact sync run."""
    run = await service.latest_run()
    if run is None:
        raise HTTPException(status_code=404, detail="No sync runs yet")
    return SyncRunOut.model_validate(run)


@router.get("/runs", response_model=SyncRunsResponse)
async def list_sync_runs(
    service: SyncService,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> SyncRunsResponse:
    """Contact sync history, newest first."""
    runs, total = await service.run_history(limit=limit, offset=offset)
    return SyncRunsResponse(
        runs=[SyncRunOut.model_validate(run) for run in runs],
        total=total,
        limit=limit,
        offset=offset,
    )
