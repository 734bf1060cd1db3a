"""Database models."""

from crmsync.models.candidate import Candidate
from crmsync.models.sync_run import SyncPhase, SyncRun, SyncStatus

__all__ = [
    "Candidate",
    "SyncPhase",
    "SyncRun",
    "SyncStatus",
]
