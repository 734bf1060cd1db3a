"""Pydantic schemas for API request/response validation."""

from crmsync.schemas.contact import ContactRecord
from crmsync.schemas.sync_run import (
    SyncCancelRequest,
    SyncCancelResponse,
    SyncRunOut,
    SyncRunsResponse,
    SyncStartRequest,
    SyncStartResponse,
)

__all__ = [
    "ContactRecord",
    "SyncCancelRequest",
    "SyncCancelResponse",
    "SyncRunOut",
    "SyncRunsResponse",
    "SyncStartRequest",
    "SyncStartResponse",
]
