"""Stall detection for long-running syncs."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from crmsync.models import SyncPhase

logger = logging.getLogger(__name__)

StallHandler = Callable[[str, str | None], Awaitable[None]]


class ActivityTracker:
    """
    Shared progress markers for one run.

    Written only by the orchestrator, read by the watchdog. The markers use
    a monotonic clock and only move forward.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        now = clock()
        self.last_activity_at = now
        self.last_batch_at = now
        self.phase = SyncPhase.CLAIMING
        self.last_processed_id: str | None = None

    def touch(self) -> None:
        """Record activity (id discovery progress, a database write)."""
        self.last_activity_at = max(self.last_activity_at, self.clock())

    def batch_completed(self) -> None:
        now = self.clock()
        self.last_activity_at = max(self.last_activity_at, now)
        self.last_batch_at = max(self.last_batch_at, now)

    def enter_phase(self, phase: SyncPhase) -> None:
        self.phase = phase
        self.batch_completed()

    def checkpointed(self, last_processed_id: str) -> None:
        self.last_processed_id = last_processed_id


class WatchdogMonitor:
    """
    Periodically checks the tracker and aborts a stalled run.

    During id discovery a stall means no discovery progress; while
    streaming or retrying it means no window completed. The abort happens at
    most once: the stall handler writes the failed checkpoint, then
    abort_event is set for the orchestrator to observe between windows.
    """

    WATCHED_PHASES = (SyncPhase.DISCOVERING_IDS, SyncPhase.STREAMING, SyncPhase.RETRYING)

    def __init__(
        self,
        tracker: ActivityTracker,
        on_stall: StallHandler,
        interval: float = 30.0,
        stall_threshold: float = 300.0,
        abort_event: asyncio.Event | None = None,
    ):
        self.tracker = tracker
        self.on_stall = on_stall
        self.interval = interval
        self.stall_threshold = stall_threshold
        self.abort_event = abort_event or asyncio.Event()
        self.stall_message: str | None = None
        self._fired = False
        self._task: asyncio.Task | None = None

    @property
    def stalled(self) -> bool:
        return self._fired

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="sync-watchdog")

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        if task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while not self._fired:
            await asyncio.sleep(self.interval)
            try:
                await self.check()
            except Exception as e:
                logger.error(f"Watchdog check failed: {e!r}")

    def stall_reason(self) -> str | None:
        """Describe the stall if the current phase has been idle past the threshold."""
        phase = self.tracker.phase
        if phase not in self.WATCHED_PHASES:
            return None

        now = self.tracker.clock()
        if phase == SyncPhase.DISCOVERING_IDS:
            idle = now - self.tracker.last_activity_at
            if idle > self.stall_threshold:
                return f"Sync stalled during ID discovery - no progress for {idle:.0f}s"
        else:
            idle = now - self.tracker.last_batch_at
            if idle > self.stall_threshold:
                return f"Sync stalled during batch processing - no batch completed in {idle:.0f}s"
        return None

    async def check(self) -> bool:
        """Run one check; returns True if this call aborted the run."""
        if self._fired:
            return False

        reason = self.stall_reason()
        if reason is None:
            return False

        self._fired = True
        self.stall_message = reason
        logger.error(
            f"WATCHDOG: {reason} (phase: {self.tracker.phase}, "
            f"last processed id: {self.tracker.last_processed_id})"
        )
        try:
            await self.on_stall(reason, self.tracker.last_processed_id)
        except Exception as e:
            logger.error(f"Watchdog could not record the stall: {e!r}")
        finally:
            self.abort_event.set()
        return True
