"""Last-resort guard that keeps SyncRun rows from staying 'running' after a crash."""

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from crmsync.services.checkpoint_store import CheckpointStore
from crmsync.services.errors import AlreadyRunningError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def fail_running_runs(store: CheckpointStore, message: str, sync_type: str | None = None) -> int:
    """Mark running runs failed, logging instead of raising."""
    try:
        count = await store.fail_running_runs(message, sync_type=sync_type)
    except Exception as e:
        logger.error(f"Could not mark running syncs as failed: {e!r}")
        return 0

    if count:
        logger.warning(f"Marked {count} running sync(s) as failed: {message}")
    return count


async def supervised_sync(
    start: Callable[[], Awaitable[T]],
    store: CheckpointStore,
    sync_type: str | None = None,
) -> T:
    """
    Run a sync, and if anything escapes it, fail whatever is still running
    before re-raising.

    The orchestrator already turns ordinary failures into a failed run, so
    this only matters for errors that escape it (cancellation, a finalize
    that never became durable, interpreter-level errors).
    """
    try:
        return await start()
    except AlreadyRunningError:
        raise
    except BaseException as e:
        await fail_running_runs(
            store,
            f"Sync process interrupted: {type(e).__name__}: {e}".rstrip(": "),
            sync_type=sync_type,
        )
        raise
