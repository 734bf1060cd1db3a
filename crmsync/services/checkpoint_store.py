"""Durable bookkeeping for sync runs: claim, checkpoint, resume, finalize."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crmsync.config import get_settings
from crmsync.models import SyncPhase, SyncRun, SyncStatus
from crmsync.services.errors import AlreadyRunningError

logger = logging.getLogger(__name__)
settings = get_settings()

# Columns update_progress may touch; status and completed_at belong to the
# terminal writes only.
PROGRESS_FIELDS = frozenset(
    {
        "phase",
        "total_expected",
        "fetched_count",
        "created_count",
        "updated_count",
        "error_count",
        "failed_id_count",
        "fetch_passes",
        "last_processed_id",
        "resumed_from_run_id",
        "error_message",
    }
)
RUNNING_ONLY_FIELDS = frozenset({"phase", "error_message"})


@dataclass(frozen=True)
class ResumePoint:
    """Where a previous, unfinished run left off."""

    run_id: int
    last_processed_id: str
    fetched_count: int
    created_count: int
    updated_count: int
    error_count: int


class CheckpointStore:
    """
    Persists one SyncRun per attempt.

    Every method opens its own session, so the orchestrator and the watchdog
    can write concurrently without sharing session state.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        finalize_max_attempts: int = settings.finalize_max_attempts,
        finalize_backoff: float = settings.finalize_backoff,
    ):
        self.session_maker = session_maker
        self.finalize_max_attempts = finalize_max_attempts
        self.finalize_backoff = finalize_backoff

    async def claim_run(self, sync_type: str, started_by: str | None = None) -> SyncRun:
        """
        Atomically create a running SyncRun unless one is already running.

        The check and the insert share one transaction; the partial unique
        index on running rows catches a concurrent claim that slipped past
        the check.

        Raises:
            AlreadyRunningError: if a run of this type is running.
        """
        async with self.session_maker() as session:
            try:
                async with session.begin():
                    existing = await session.execute(
                        select(SyncRun.id)
                        .where(SyncRun.sync_type == sync_type, SyncRun.status == SyncStatus.RUNNING)
                        .limit(1)
                    )
                    existing_id = existing.scalar_one_or_none()
                    if existing_id is not None:
                        raise AlreadyRunningError(sync_type, existing_id)

                    run = SyncRun(
                        sync_type=sync_type,
                        status=SyncStatus.RUNNING,
                        phase=SyncPhase.CLAIMING,
                        started_at=datetime.now(UTC),
                        fetched_count=0,
                        created_count=0,
                        updated_count=0,
                        error_count=0,
                        failed_id_count=0,
                        fetch_passes=0,
                        started_by=started_by,
                    )
                    session.add(run)
                    await session.flush()
            except IntegrityError as e:
                logger.info(f"Concurrent claim for {sync_type} lost the race")
                raise AlreadyRunningError(sync_type) from e

        logger.info(f"Claimed sync run #{run.id} ({sync_type})")
        return run

    async def update_progress(self, run_id: int, **fields: Any) -> None:
        """
        Merge counters and progress details into a run row.

        Counters are written even after the run went terminal (records
        persisted by an in-flight window still count), but the phase and
        message only change while the run is running so a terminal reason
        is never overwritten.
        """
        unknown = set(fields) - PROGRESS_FIELDS
        if unknown:
            raise ValueError(f"Not a progress field: {', '.join(sorted(unknown))}")
        live = {key: fields.pop(key) for key in RUNNING_ONLY_FIELDS if key in fields}
        if not fields and not live:
            return

        async with self.session_maker() as session:
            if fields:
                await session.execute(
                    update(SyncRun).where(SyncRun.id == run_id).values(**fields)
                )
            if live:
                await session.execute(
                    update(SyncRun)
                    .where(SyncRun.id == run_id, SyncRun.status == SyncStatus.RUNNING)
                    .values(**live)
                )
            await session.commit()

    async def find_resume_point(
        self, sync_type: str, exclude_run_id: int | None = None
    ) -> ResumePoint | None:
        """
        Latest running/failed run that wrote at least one checkpoint.

        Runs that died before their first checkpoint are not resumable, and
        neither are runs superseded by a later completed run.
        """
        query = (
            select(SyncRun)
            .where(
                SyncRun.sync_type == sync_type,
                SyncRun.status.in_([SyncStatus.RUNNING, SyncStatus.FAILED]),
                SyncRun.last_processed_id.is_not(None),
            )
            .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
            .limit(1)
        )
        if exclude_run_id is not None:
            query = query.where(SyncRun.id != exclude_run_id)

        async with self.session_maker() as session:
            completed = await session.execute(
                select(func.max(SyncRun.id)).where(
                    SyncRun.sync_type == sync_type, SyncRun.status == SyncStatus.COMPLETED
                )
            )
            last_completed_id = completed.scalar()
            if last_completed_id is not None:
                query = query.where(SyncRun.id > last_completed_id)

            result = await session.execute(query)
            run = result.scalar_one_or_none()

        if run is None:
            return None
        return ResumePoint(
            run_id=run.id,
            last_processed_id=run.last_processed_id,
            fetched_count=run.fetched_count or 0,
            created_count=run.created_count or 0,
            updated_count=run.updated_count or 0,
            error_count=run.error_count or 0,
        )

    async def _terminate(self, run_id: int, status: SyncStatus, fields: dict[str, Any]) -> bool:
        async with self.session_maker() as session:
            result = await session.execute(
                update(SyncRun)
                .where(SyncRun.id == run_id, SyncRun.status == SyncStatus.RUNNING)
                .values(
                    status=status,
                    phase=SyncPhase.COMPLETED if status == SyncStatus.COMPLETED else SyncPhase.FAILED,
                    completed_at=datetime.now(UTC),
                    **fields,
                )
            )
            updated = result.rowcount
            await session.commit()
        return updated > 0

    async def finalize(
        self,
        run_id: int,
        status: SyncStatus,
        message: str | None = None,
        **counts: Any,
    ) -> bool:
        """
        Terminal write for a run, retried until durable.

        Only a running row is updated, so whichever of finalize, the watchdog
        or a cancel gets there first wins.

        Returns:
            True if this call terminated the run, False if it was already terminal
        """
        if status == SyncStatus.RUNNING:
            raise ValueError("finalize needs a terminal status")
        unknown = set(counts) - PROGRESS_FIELDS
        if unknown:
            raise ValueError(f"Not a progress field: {', '.join(sorted(unknown))}")

        fields = {**counts, "error_message": message}
        delay = self.finalize_backoff
        for attempt in range(1, self.finalize_max_attempts + 1):
            try:
                terminated = await self._terminate(run_id, status, fields)
            except Exception as e:
                if attempt == self.finalize_max_attempts:
                    logger.error(f"Giving up finalizing run #{run_id} after {attempt} attempts: {e!r}")
                    raise
                logger.warning(f"Finalize of run #{run_id} failed (attempt {attempt}), retry in {delay}s: {e!r}")
                await asyncio.sleep(delay)
                delay = min(delay * 2, 30.0)
                continue

            if terminated:
                logger.info(f"Run #{run_id} finalized as {status}")
            else:
                logger.info(f"Run #{run_id} was already terminal; {status} not recorded")
            return terminated

        return False

    async def cleanup_stale_runs(self, sync_type: str, older_than: timedelta) -> int:
        """Fail running rows that started before the cutoff (crashed processes)."""
        cutoff = datetime.now(UTC) - older_than
        async with self.session_maker() as session:
            result = await session.execute(
                select(SyncRun).where(
                    SyncRun.sync_type == sync_type,
                    SyncRun.status == SyncStatus.RUNNING,
                    SyncRun.started_at < cutoff,
                )
            )
            stale = list(result.scalars().all())

        cleaned = 0
        for run in stale:
            message = (
                "Sync process interrupted or crashed - auto-cleanup of stale sync "
                f"started at {run.started_at}"
            )
            if await self._terminate(run.id, SyncStatus.FAILED, {"error_message": message}):
                cleaned += 1
                logger.warning(f"Marked stale sync run #{run.id} as failed")
        return cleaned

    async def cancel_running(
        self,
        sync_type: str,
        reason: str,
        cancelled_by: str | None = None,
    ) -> SyncRun | None:
        """Mark the running run of this type as failed with a cancellation reason."""
        running = await self.running_run(sync_type)
        if running is None:
            return None

        who = cancelled_by or "unknown user"
        cancelled = await self._terminate(
            running.id,
            SyncStatus.FAILED,
            {
                "error_message": f"Sync cancelled by {who}",
                "cancelled_by": cancelled_by,
                "cancel_reason": reason,
            },
        )
        return running if cancelled else None

    async def fail_running_runs(self, message: str, sync_type: str | None = None) -> int:
        """Mark running runs failed (process shutdown/crash)."""
        query = update(SyncRun).where(SyncRun.status == SyncStatus.RUNNING)
        if sync_type:
            query = query.where(SyncRun.sync_type == sync_type)
        async with self.session_maker() as session:
            result = await session.execute(
                query.values(
                    status=SyncStatus.FAILED,
                    phase=SyncPhase.FAILED,
                    completed_at=datetime.now(UTC),
                    error_message=message,
                )
            )
            count = result.rowcount
            await session.commit()
        return count

    async def get_run(self, run_id: int) -> SyncRun | None:
        async with self.session_maker() as session:
            return await session.get(SyncRun, run_id)

    async def running_run(self, sync_type: str) -> SyncRun | None:
        async with self.session_maker() as session:
            result = await session.execute(
                select(SyncRun)
                .where(SyncRun.sync_type == sync_type, SyncRun.status == SyncStatus.RUNNING)
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def latest_run(self, sync_type: str | None = None) -> SyncRun | None:
        query = select(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(1)
        if sync_type:
            query = query.where(SyncRun.sync_type == sync_type)
        async with self.session_maker() as session:
            result = await session.execute(query)
            return result.scalar_one_or_none()

    async def list_runs(
        self, limit: int = 20, offset: int = 0, sync_type: str | None = None
    ) -> list[SyncRun]:
        query = (
            select(SyncRun)
            .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
            .limit(limit)
            .offset(offset)
        )
        if sync_type:
            query = query.where(SyncRun.sync_type == sync_type)
        async with self.session_maker() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def count_runs(self, sync_type: str | None = None) -> int:
        query = select(func.count(SyncRun.id))
        if sync_type:
            query = query.where(SyncRun.sync_type == sync_type)
        async with self.session_maker() as session:
            result = await session.execute(query)
            return result.scalar() or 0

    async def last_completed_at(self, sync_type: str) -> datetime | None:
        async with self.session_maker() as session:
            result = await session.execute(
                select(func.max(SyncRun.completed_at)).where(
                    SyncRun.sync_type == sync_type, SyncRun.status == SyncStatus.COMPLETED
                )
            )
            return result.scalar()
