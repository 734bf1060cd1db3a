"""Entry points for starting, cancelling and inspecting contact syncs."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crmsync.config import Settings, get_settings
from crmsync.database import async_session_maker
from crmsync.models import SyncRun
from crmsync.services.checkpoint_store import CheckpointStore
from crmsync.services.orchestrator import SyncOrchestrator, SyncOutcome
from crmsync.services.persistence import PersistenceSink
from crmsync.services.progress import (
    BroadcastProgressObserver,
    CompositeProgressObserver,
    LoggingProgressObserver,
    ProgressObserver,
)
from crmsync.services.supervisor import fail_running_runs, supervised_sync
from crmsync.services.vtiger_client import VtigerClient
from crmsync.websocket.manager import manager as ws_manager

logger = logging.getLogger(__name__)


@dataclass
class CancelResult:
    cancelled: bool
    message: str


class ContactSyncService:
    """
    Owns the collaborators of the contact sync and at most one in-process run.

    A new orchestrator and Vtiger client are built per run. Whether a run is
    already in progress is decided by the database claim, not by this
    object, so several processes can share one database safely.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] = async_session_maker,
        client_factory: Callable[[], VtigerClient] = VtigerClient,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.sync_type = self.settings.sync_type
        self.client_factory = client_factory
        self.store = CheckpointStore(
            session_maker,
            finalize_max_attempts=self.settings.finalize_max_attempts,
            finalize_backoff=self.settings.finalize_backoff,
        )
        self.sink = PersistenceSink(session_maker)
        self._active: SyncOrchestrator | None = None
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        """True while this process is executing a run."""
        return self._active is not None

    def default_observer(self) -> ProgressObserver:
        return CompositeProgressObserver(
            LoggingProgressObserver(f"{self.sync_type} sync"),
            BroadcastProgressObserver(ws_manager, self.sync_type),
        )

    def _build(self, client: VtigerClient, observer: ProgressObserver | None) -> SyncOrchestrator:
        return SyncOrchestrator(
            client,
            self.store,
            self.sink,
            observer=observer or self.default_observer(),
            settings=self.settings,
        )

    async def start_sync(
        self,
        observer: ProgressObserver | None = None,
        started_by: str | None = None,
    ) -> SyncOutcome:
        """
        Run a sync to completion.

        Raises:
            AlreadyRunningError: immediately, if a run is already in progress
        """
        async with self.client_factory() as client:
            orchestrator = self._build(client, observer)
            run = await orchestrator.claim(started_by)
            self._active = orchestrator
            try:
                return await supervised_sync(
                    lambda: orchestrator.execute(run), self.store, self.sync_type
                )
            finally:
                self._active = None

    async def start_sync_in_background(
        self,
        observer: ProgressObserver | None = None,
        started_by: str | None = None,
    ) -> SyncRun:
        """
        Claim a run now and execute it in a background task.

        Raises:
            AlreadyRunningError: if a run is already in progress
        """
        client = self.client_factory()
        orchestrator = self._build(client, observer)
        try:
            run = await orchestrator.claim(started_by)
        except BaseException:
            await client.aclose()
            raise

        self._active = orchestrator
        self._task = asyncio.create_task(
            self._execute_claimed(client, orchestrator, run),
            name=f"{self.sync_type}-sync-{run.id}",
        )
        return run

    async def _execute_claimed(
        self, client: VtigerClient, orchestrator: SyncOrchestrator, run: SyncRun
    ) -> SyncOutcome | None:
        try:
            async with client:
                return await supervised_sync(
                    lambda: orchestrator.execute(run), self.store, self.sync_type
                )
        except Exception as e:
            logger.error(f"Background sync run #{run.id} crashed: {e}", exc_info=True)
            return None
        finally:
            if self._active is orchestrator:
                self._active = None

    async def wait(self) -> SyncOutcome | None:
        """Wait for the current background run, if any."""
        if self._task is None:
            return None
        return await self._task

    async def cancel_sync(
        self,
        cancelled_by: str | None = None,
        reason: str = "Cancelled by operator",
    ) -> CancelResult:
        """
        Mark the running run failed with a cancellation reason.

        An in-process run also stops at its next window boundary; a run owned
        by another process only sees the cancellation when it tries to
        finalize.
        """
        run = await self.store.cancel_running(self.sync_type, reason, cancelled_by)

        if self._active is not None:
            self._active.request_abort(f"Sync cancelled by {cancelled_by or 'unknown user'}")

        if run is None:
            return CancelResult(cancelled=False, message="No sync is currently running")

        logger.info(f"Sync run #{run.id} cancelled by {cancelled_by or 'unknown user'}: {reason}")
        return CancelResult(cancelled=True, message=f"Sync run #{run.id} cancelled")

    async def latest_run(self) -> SyncRun | None:
        return await self.store.latest_run(self.sync_type)

    async def run_history(self, limit: int = 20, offset: int = 0) -> tuple[list[SyncRun], int]:
        runs = await self.store.list_runs(limit=limit, offset=offset, sync_type=self.sync_type)
        total = await self.store.count_runs(self.sync_type)
        return runs, total

    async def shutdown(self) -> None:
        """
        Stop the in-process run and make sure nothing is left 'running'.

        A background run is cancelled and awaited. A run started with
        start_sync is asked to abort; its caller still receives the failed
        outcome.
        """
        message = "Server shutting down - sync interrupted"
        interrupted = False

        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            interrupted = True

        if self._active is not None:
            self._active.request_abort(message)
            interrupted = True

        if interrupted:
            await fail_running_runs(self.store, message, self.sync_type)


_service: ContactSyncService | None = None


def get_sync_service() -> ContactSyncService:
    """Process-wide service used by the API and the scheduler."""
    global _service
    if _service is None:
        _service = ContactSyncService()
    return _service
