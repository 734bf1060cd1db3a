"""
Resumable bulk sync of Vtiger contacts into the candidates table.

One run moves through claiming, id discovery, windowed fetch+persist,
retry passes and finalizing, writing its phase and counters to the
SyncRun row as it goes. A watchdog task runs alongside and aborts the run
when progress stops.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Protocol

from crmsync.config import Settings, get_settings
from crmsync.models import SyncPhase, SyncRun, SyncStatus
from crmsync.schemas.contact import ContactRecord
from crmsync.services.batch_fetcher import BatchFetcher, is_retryable_error
from crmsync.services.checkpoint_store import CheckpointStore, ResumePoint
from crmsync.services.errors import (
    DiscoveryError,
    IncompleteSyncError,
    SyncAbortedError,
    SyncCancelledError,
    SyncError,
    SyncStalledError,
)
from crmsync.services.persistence import PersistenceSink
from crmsync.services.progress import NullProgressObserver, ProgressObserver
from crmsync.services.retry_scheduler import RetryOutcome, RetryScheduler
from crmsync.services.watchdog import ActivityTracker, WatchdogMonitor

logger = logging.getLogger(__name__)


class RemoteClient(Protocol):
    async def count_all(self) -> int | None: ...

    async def list_ids(
        self,
        progress_callback: Callable[[int, int | None], None] | None = None,
        total_hint: int | None = None,
    ) -> list[str]: ...

    async def fetch_by_id(self, record_id: str) -> ContactRecord | None: ...


@dataclass
class SyncOutcome:
    run_id: int
    status: SyncStatus
    total_expected: int | None = None
    fetched: int = 0
    created: int = 0
    updated: int = 0
    errors: int = 0
    fetch_passes: int = 0
    failed_ids: list[str] = field(default_factory=list)
    message: str | None = None

    @property
    def processed(self) -> int:
        return self.created + self.updated


@dataclass
class _RunState:
    run_id: int
    total_expected: int | None = None
    fetched: int = 0
    created: int = 0
    updated: int = 0
    errors: int = 0
    fetch_passes: int = 0
    last_processed_id: str | None = None
    resumed_from: ResumePoint | None = None
    new_fetched: int = 0
    new_processed: int = 0
    buffer: list[ContactRecord] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)
    error_notified: bool = False

    @property
    def processed(self) -> int:
        return self.created + self.updated

    def counters(self) -> dict[str, Any]:
        return {
            "fetched_count": self.fetched,
            "created_count": self.created,
            "updated_count": self.updated,
            "error_count": self.errors,
            "failed_id_count": len(self.failed_ids),
            "fetch_passes": self.fetch_passes,
        }


class SyncOrchestrator:
    """
    Drives a single sync run.

    An orchestrator instance is used for one run: build it with its
    collaborators, then call run() (or claim() followed by execute()).
    """

    def __init__(
        self,
        client: RemoteClient,
        store: CheckpointStore,
        sink: PersistenceSink,
        observer: ProgressObserver | None = None,
        settings: Settings | None = None,
        fetcher: BatchFetcher | None = None,
        retry_scheduler: RetryScheduler | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self.client = client
        self.store = store
        self.sink = sink
        self.observer = observer or NullProgressObserver()
        self.sync_type = self.settings.sync_type
        self.fetcher = fetcher or BatchFetcher(client)
        self.retry_scheduler = retry_scheduler or RetryScheduler(
            self.fetcher,
            base_concurrency=self.settings.concurrency_limit,
            base_timeout=self.settings.per_item_timeout,
            max_passes=self.settings.max_retry_passes,
            timeout_step=self.settings.retry_timeout_step,
            delay_step=self.settings.retry_delay_step,
        )
        self.clock = clock

        self.abort_event = asyncio.Event()
        self.run_id: int | None = None
        self.retry_outcome: RetryOutcome | None = None
        self._watchdog: WatchdogMonitor | None = None
        self._cancel_reason: str | None = None
        self._pending_writes: set[asyncio.Task] = set()

    async def run(self, started_by: str | None = None) -> SyncOutcome:
        """
        Claim and execute a run.

        Raises:
            AlreadyRunningError: another run of this sync type is in progress
            asyncio.CancelledError: the task was cancelled (the run is marked failed first)
        """
        run = await self.claim(started_by)
        return await self.execute(run)

    async def claim(self, started_by: str | None = None) -> SyncRun:
        """Fail runs left behind by dead processes, then claim a new one."""
        cleaned = await self.store.cleanup_stale_runs(
            self.sync_type, timedelta(minutes=self.settings.stale_run_minutes)
        )
        if cleaned:
            logger.warning(f"Cleaned up {cleaned} stale {self.sync_type} run(s)")

        run = await self.store.claim_run(self.sync_type, started_by=started_by)
        self.run_id = run.id
        return run

    def request_abort(self, reason: str) -> None:
        """Ask the run to stop at the next window boundary."""
        self._cancel_reason = reason
        self.abort_event.set()

    async def execute(self, run: SyncRun) -> SyncOutcome:
        state = _RunState(run_id=run.id)
        self.run_id = run.id
        tracker = ActivityTracker(self.clock)

        async def record_stall(message: str, last_processed_id: str | None) -> None:
            counts = {"last_processed_id": last_processed_id} if last_processed_id else {}
            await self.store.finalize(state.run_id, SyncStatus.FAILED, message, **counts)

        self._watchdog = WatchdogMonitor(
            tracker,
            on_stall=record_stall,
            interval=self.settings.watchdog_interval,
            stall_threshold=self.settings.stall_threshold,
            abort_event=self.abort_event,
        )
        self._watchdog.start()
        logger.info(f"Starting {self.sync_type} sync run #{state.run_id}")

        try:
            ids = await self._discover(state, tracker)
            await self._stream(ids, state, tracker)
            await self._retry(state, tracker)
            return await self._finalize(state, tracker)

        except asyncio.CancelledError:
            message = f"Sync cancelled during {tracker.phase} - process shutting down"
            logger.error(f"Run #{state.run_id}: {message}")
            await self._fail(state, message)
            await self._notify_error(state, SyncCancelledError(message))
            raise

        except SyncAbortedError as e:
            logger.error(f"Run #{state.run_id} aborted: {e}")
            await self._fail(state, str(e))
            run_row = await self._safe_get_run(state.run_id)
            message = run_row.error_message if run_row and run_row.error_message else str(e)
            await self._notify_error(state, e)
            return self._outcome(state, SyncStatus.FAILED, message)

        except Exception as e:
            detail = str(e) or type(e).__name__
            message = f"Sync failed during {tracker.phase}: {detail}"
            logger.error(f"Run #{state.run_id}: {message}", exc_info=True)
            await self._fail(state, message)
            await self._notify_error(state, e)
            return self._outcome(state, SyncStatus.FAILED, message)

        finally:
            await self._watchdog.stop()
            await self._drain_pending_writes()

    # Phases

    async def _discover(self, state: _RunState, tracker: ActivityTracker) -> list[str]:
        await self._enter_phase(state, tracker, SyncPhase.DISCOVERING_IDS, "Counting contacts")

        try:
            state.total_expected = await self._until_aborted(
                self.client.count_all(), self.settings.discovery_timeout
            )
        except SyncAbortedError:
            raise
        except Exception as e:
            logger.warning(f"Remote count failed: {e!r}")
            state.total_expected = None

        if state.total_expected is not None:
            await self._checkpoint(state.run_id, total_expected=state.total_expected)
        else:
            logger.warning("Remote count unavailable; the discovered id list will be the expected total")

        await self._notify("on_start", state.total_expected)
        state.resumed_from = await self.store.find_resume_point(
            self.sync_type, exclude_run_id=state.run_id
        )

        last_report = float("-inf")

        def on_progress(fetched_so_far: int, total: int | None) -> None:
            nonlocal last_report
            tracker.touch()
            now = self.clock()
            if now - last_report < self.settings.discovery_progress_interval:
                return
            last_report = now
            shown = total if total is not None else "?"
            self._spawn_write(
                self._checkpoint(
                    state.run_id, error_message=f"Fetching contact IDs: {fetched_so_far}/{shown}"
                )
            )

        delay = self.settings.discovery_backoff_initial
        attempts = max(1, self.settings.discovery_retries)
        ids: list[str] = []
        for attempt in range(1, attempts + 1):
            self._raise_if_aborted()
            try:
                ids = await self._until_aborted(
                    self.client.list_ids(
                        progress_callback=on_progress, total_hint=state.total_expected
                    ),
                    self.settings.discovery_timeout,
                )
                break
            except SyncAbortedError:
                raise
            except Exception as e:
                if not is_retryable_error(e) or attempt == attempts:
                    raise DiscoveryError(
                        f"Failed to fetch contact IDs after {attempt} attempt(s): {e!r}"
                    ) from e
                logger.warning(
                    f"Contact ID discovery attempt {attempt}/{attempts} failed: {e!r}; "
                    f"retrying in {delay:.0f}s"
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.settings.discovery_backoff_max)

        await self._drain_pending_writes()
        tracker.touch()

        unique_ids = list(dict.fromkeys(ids))
        if len(unique_ids) != len(ids):
            logger.warning(f"Dropped {len(ids) - len(unique_ids)} duplicate contact ids")
            ids = unique_ids

        if state.total_expected is None or len(ids) > state.total_expected:
            if state.total_expected is not None:
                logger.warning(
                    f"Discovered {len(ids)} ids but the remote count is {state.total_expected}; "
                    "expecting the discovered total"
                )
            state.total_expected = len(ids)
            await self._checkpoint(state.run_id, total_expected=state.total_expected)
        elif len(ids) < state.total_expected:
            logger.warning(
                f"Discovered {len(ids)} ids but the remote count is {state.total_expected}"
            )

        logger.info(f"Run #{state.run_id}: discovered {len(ids)} contact ids")
        return ids

    async def _stream(self, ids: list[str], state: _RunState, tracker: ActivityTracker) -> None:
        start_index = self._resume_index(ids, state)
        if state.resumed_from is not None and start_index > 0:
            await self._checkpoint(
                state.run_id,
                resumed_from_run_id=state.resumed_from.run_id,
                last_processed_id=state.last_processed_id,
                **state.counters(),
            )

        await self._enter_phase(
            state, tracker, SyncPhase.STREAMING, f"Processing contacts from index {start_index}"
        )
        state.fetch_passes = 1

        width = max(1, self.settings.concurrency_limit)
        remaining = ids[start_index:]
        for offset in range(0, len(remaining), width):
            self._raise_if_aborted()
            window = remaining[offset : offset + width]

            batch = await self.fetcher.fetch_batch(window, width, self.settings.per_item_timeout)
            state.fetched += len(batch.succeeded)
            state.new_fetched += len(batch.succeeded)
            state.buffer.extend(batch.succeeded)
            state.failed_ids.extend(batch.failed_ids)
            tracker.batch_completed()

            is_last_window = offset + width >= len(remaining)
            if len(state.buffer) >= self.settings.flush_threshold or is_last_window:
                await self._flush(state, tracker, last_processed_id=window[-1])

            await self._notify("on_batch", len(batch.succeeded), state.processed, state.total_expected)

        logger.info(
            f"Run #{state.run_id}: main pass done, {state.processed} processed, "
            f"{len(state.failed_ids)} failed ids"
        )

    def _resume_index(self, ids: list[str], state: _RunState) -> int:
        resume = state.resumed_from
        if resume is None:
            return 0

        try:
            position = ids.index(resume.last_processed_id)
        except ValueError:
            logger.warning(
                f"Resume id {resume.last_processed_id} from run #{resume.run_id} is no longer "
                "in the remote id list - starting from the beginning"
            )
            state.resumed_from = None
            return 0

        state.fetched = resume.fetched_count
        state.created = resume.created_count
        state.updated = resume.updated_count
        state.errors = resume.error_count
        state.last_processed_id = resume.last_processed_id
        logger.info(
            f"Resuming from run #{resume.run_id} after id {resume.last_processed_id} "
            f"(index {position + 1} of {len(ids)})"
        )
        return position + 1

    async def _retry(self, state: _RunState, tracker: ActivityTracker) -> None:
        if not state.failed_ids:
            return

        await self._enter_phase(
            state, tracker, SyncPhase.RETRYING, f"Retrying {len(state.failed_ids)} failed contacts"
        )

        async def on_window(records: list[ContactRecord]) -> None:
            tracker.batch_completed()
            state.fetched += len(records)
            state.new_fetched += len(records)
            state.buffer.extend(records)
            if len(state.buffer) >= self.settings.flush_threshold:
                await self._flush(state, tracker)

        async def on_pass(pass_number: int, recovered: int, still_failing: list[str]) -> None:
            state.failed_ids = list(still_failing)
            state.fetch_passes = 1 + pass_number
            await self._flush(state, tracker)
            await self._notify("on_batch", recovered, state.processed, state.total_expected)

        self.retry_outcome = await self.retry_scheduler.run(
            state.failed_ids, on_window, on_pass, self._raise_if_aborted
        )
        state.failed_ids = list(self.retry_outcome.remaining)

    async def _finalize(self, state: _RunState, tracker: ActivityTracker) -> SyncOutcome:
        await self._enter_phase(state, tracker, SyncPhase.FINALIZING, None)
        if state.buffer:
            await self._flush(state, tracker)

        processed = state.processed
        expected = state.total_expected
        failure: SyncError | None = None

        if expected is None or processed >= expected:
            status, message = SyncStatus.COMPLETED, None
        elif state.resumed_from is not None and state.new_fetched == 0 and state.new_processed == 0:
            status = SyncStatus.COMPLETED
            message = f"Resumed sync completed - all {processed} contacts already processed"
        else:
            percent = processed / expected * 100 if expected else 0.0
            status = SyncStatus.FAILED
            message = (
                f"Incomplete sync: processed {processed}/{expected} contacts "
                f"({percent:.1f}% complete)"
            )
            failure = IncompleteSyncError(message, processed, expected)

        if state.failed_ids:
            sample_size = self.settings.failed_id_sample_size
            sample = ", ".join(state.failed_ids[:sample_size])
            more = f" and {len(state.failed_ids) - sample_size} more" if len(state.failed_ids) > sample_size else ""
            detail = (
                f"{len(state.failed_ids)} ids still failing after {state.fetch_passes} passes: "
                f"{sample}{more}"
            )
            message = f"{message} - {detail}" if message else detail

        terminated = await self.store.finalize(
            state.run_id,
            status,
            message,
            last_processed_id=state.last_processed_id,
            **state.counters(),
        )

        if not terminated:
            # A cancel or the watchdog ended the run first.
            run_row = await self._safe_get_run(state.run_id)
            message = run_row.error_message if run_row else message
            error = SyncAbortedError(message or f"Run #{state.run_id} was ended externally")
            await self._notify_error(state, error)
            return self._outcome(state, SyncStatus.FAILED, message)

        tracker.enter_phase(SyncPhase.COMPLETED if status == SyncStatus.COMPLETED else SyncPhase.FAILED)
        if failure is not None:
            logger.error(f"Run #{state.run_id}: {message}")
            await self._notify_error(state, failure)
        else:
            logger.info(
                f"Run #{state.run_id} completed: {state.created} created, {state.updated} updated, "
                f"{state.errors} errors, {state.fetch_passes} fetch passes"
            )
            await self._notify("on_complete")
        return self._outcome(state, status, message)

    # Helpers

    async def _flush(
        self,
        state: _RunState,
        tracker: ActivityTracker,
        last_processed_id: str | None = None,
    ) -> None:
        """Persist and clear the buffer, then checkpoint."""
        if state.buffer:
            result = await self.sink.upsert_batch(state.buffer)
            state.buffer = []
            state.created += result.created
            state.updated += result.updated
            state.errors += result.errors
            state.new_processed += result.processed
            tracker.touch()

        if last_processed_id is not None:
            state.last_processed_id = last_processed_id
            tracker.checkpointed(last_processed_id)

        await self._checkpoint(
            state.run_id, last_processed_id=state.last_processed_id, **state.counters()
        )

    async def _enter_phase(
        self,
        state: _RunState,
        tracker: ActivityTracker,
        phase: SyncPhase,
        detail: str | None,
    ) -> None:
        tracker.enter_phase(phase)
        await self._checkpoint(state.run_id, phase=phase, error_message=detail)

    async def _checkpoint(self, run_id: int, **fields: Any) -> None:
        """Progress writes are best-effort; a lost one only costs resume precision."""
        try:
            await self.store.update_progress(run_id, **fields)
        except Exception as e:
            logger.warning(f"Checkpoint write for run #{run_id} failed: {e!r}")

    async def _fail(self, state: _RunState, message: str) -> None:
        try:
            await self.store.finalize(state.run_id, SyncStatus.FAILED, message)
        except Exception as e:
            logger.error(f"Could not mark run #{state.run_id} failed: {e!r}")

    async def _safe_get_run(self, run_id: int) -> SyncRun | None:
        try:
            return await self.store.get_run(run_id)
        except Exception as e:
            logger.warning(f"Could not reload run #{run_id}: {e!r}")
            return None

    def _raise_if_aborted(self) -> None:
        if not self.abort_event.is_set():
            return
        if self._watchdog is not None and self._watchdog.stalled:
            raise SyncStalledError(self._watchdog.stall_message or "Sync stalled")
        raise SyncCancelledError(self._cancel_reason or "Sync cancelled")

    async def _until_aborted(self, coro: Coroutine[Any, Any, Any], timeout: float) -> Any:
        """Await coro under a timeout, giving up early if the run is aborted."""
        work = asyncio.create_task(coro)
        aborted = asyncio.create_task(self.abort_event.wait())
        try:
            async with asyncio.timeout(timeout):
                await asyncio.wait({work, aborted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (work, aborted):
                if not task.done():
                    task.cancel()
            await asyncio.gather(work, aborted, return_exceptions=True)

        if not work.cancelled():
            return work.result()
        self._raise_if_aborted()
        raise DiscoveryError("Contact ID discovery was interrupted")

    def _spawn_write(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _drain_pending_writes(self) -> None:
        if self._pending_writes:
            await asyncio.gather(*self._pending_writes, return_exceptions=True)

    async def _notify(self, method: str, *args: Any) -> None:
        try:
            await getattr(self.observer, method)(*args)
        except Exception as e:
            logger.warning(f"Progress observer {method} failed: {e!r}")

    async def _notify_error(self, state: _RunState, error: BaseException) -> None:
        if state.error_notified:
            return
        state.error_notified = True
        await self._notify("on_error", error)

    def _outcome(self, state: _RunState, status: SyncStatus, message: str | None) -> SyncOutcome:
        return SyncOutcome(
            run_id=state.run_id,
            status=status,
            total_expected=state.total_expected,
            fetched=state.fetched,
            created=state.created,
            updated=state.updated,
            errors=state.errors,
            fetch_passes=state.fetch_passes,
            failed_ids=list(state.failed_ids),
            message=message,
        )
