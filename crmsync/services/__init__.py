"""Services for the contact sync engine."""

from crmsync.services.checkpoint_store import CheckpointStore, ResumePoint
from crmsync.services.orchestrator import SyncOrchestrator, SyncOutcome
from crmsync.services.persistence import PersistenceSink
from crmsync.services.sync_service import CancelResult, ContactSyncService, get_sync_service
from crmsync.services.vtiger_client import VtigerClient

__all__ = [
    "CancelResult",
    "CheckpointStore",
    "ContactSyncService",
    "PersistenceSink",
    "ResumePoint",
    "SyncOrchestrator",
    "SyncOutcome",
    "VtigerClient",
    "get_sync_service",
]
