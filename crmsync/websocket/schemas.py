"""WebSocket message schemas."""

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(UTC)


class SyncStartMessage(BaseModel):
    """A sync run started."""

    type: Literal["sync_start"] = "sync_start"
    sync_type: str
    total: int | None = None
    timestamp: datetime = Field(default_factory=_now)


class SyncBatchMessage(BaseModel):
    """A window (or retry pass) finished."""

    type: Literal["sync_batch"] = "sync_batch"
    sync_type: str
    batch_size: int
    total_processed: int
    total: int | None = None
    timestamp: datetime = Field(default_factory=_now)


class SyncCompleteMessage(BaseModel):
    type: Literal["sync_complete"] = "sync_complete"
    sync_type: str
    timestamp: datetime = Field(default_factory=_now)


class SyncErrorMessage(BaseModel):
    type: Literal["sync_error"] = "sync_error"
    sync_type: str
    message: str
    timestamp: datetime = Field(default_factory=_now)


class PingMessage(BaseModel):
    """Ping message for keep-alive."""

    type: Literal["ping"] = "ping"


class PongMessage(BaseModel):
    """Pong response for keep-alive."""

    type: Literal["pong"] = "pong"


class ErrorMessage(BaseModel):
    """Error message from server."""

    type: Literal["error"] = "error"
    message: str
