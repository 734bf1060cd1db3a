"""Exceptions raised by the contact sync engine."""


class SyncError(Exception):
    """Base exception for sync engine errors."""

    pass


class AlreadyRunningError(SyncError):
    """A sync of the same type is already running."""

    def __init__(self, sync_type: str, run_id: int | None = None):
        self.sync_type = sync_type
        self.run_id = run_id
        detail = f" (run #{run_id})" if run_id is not None else ""
        super().__init__(
            f"A {sync_type} sync is already in progress{detail}. "
            "Please wait for it to complete."
        )


class DiscoveryError(SyncError):
    """Listing the remote ids failed after all retries."""

    pass


class SyncAbortedError(SyncError):
    """The run was stopped before it could finish."""

    pass


class SyncStalledError(SyncAbortedError):
    """The watchdog saw no progress within the stall threshold."""

    pass


class SyncCancelledError(SyncAbortedError):
    """An operator cancelled the run."""

    pass


class IncompleteSyncError(SyncError):
    """The run finished without covering the expected total."""

    def __init__(self, message: str, processed: int, expected: int | None):
        self.processed = processed
        self.expected = expected
        super().__init__(message)
