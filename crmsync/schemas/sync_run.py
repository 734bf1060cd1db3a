"""Pydantic schemas for sync runs."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class SyncRunOut(BaseModel):
    """Sync run response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    sync_type: str
    status: str
    phase: str

    started_at: datetime
    completed_at: datetime | None = None

    total_expected: int | None = None
    fetched_count: int = 0
    created_count: int = 0
    updated_count: int = 0
    error_count: int = 0
    failed_id_count: int = 0
    fetch_passes: int = 0

    last_processed_id: str | None = None
    resumed_from_run_id: int | None = None
    error_message: str | None = None

    started_by: str | None = None
    cancelled_by: str | None = None
    cancel_reason: str | None = None


class SyncRunsResponse(BaseModel):
    """Paginated sync run history."""

    runs: list[SyncRunOut]
    total: int
    limit: int
    offset: int


class SyncStartRequest(BaseModel):
    started_by: str | None = None


class SyncStartResponse(BaseModel):
    run_id: int
    status: str
    message: str


class SyncCancelRequest(BaseModel):
    cancelled_by: str | None = None
    reason: str | None = None


class SyncCancelResponse(BaseModel):
    cancelled: bool
    message: str
