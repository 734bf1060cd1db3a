"""Background task scheduler for the daily contact sync."""

import logging
from datetime import UTC, datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from crmsync.config import get_settings
from crmsync.services.errors import AlreadyRunningError
from crmsync.services.sync_service import ContactSyncService, get_sync_service

logger = logging.getLogger(__name__)
settings = get_settings()

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


async def daily_contact_sync_job(service: ContactSyncService | None = None) -> None:
    """Background job running the full Vtiger contact sync."""
    service = service or get_sync_service()
    logger.info("Starting scheduled contact sync")
    try:
        outcome = await service.start_sync(started_by="scheduler")
        logger.info(
            f"Scheduled contact sync run #{outcome.run_id} finished as {outcome.status}: "
            f"{outcome.processed}/{outcome.total_expected} processed"
        )
    except AlreadyRunningError as e:
        logger.info(f"Skipping scheduled contact sync: {e}")
    except Exception as e:
        logger.error(f"Scheduled contact sync failed: {e}", exc_info=True)


async def startup_catchup_job(service: ContactSyncService | None = None) -> bool:
    """
    Run the daily sync on startup if no run completed today.

    Returns:
        True if a sync was started
    """
    service = service or get_sync_service()
    last_completed = await service.store.last_completed_at(service.sync_type)
    today = datetime.now(UTC).date()

    if last_completed is not None:
        if last_completed.tzinfo is None:
            last_completed = last_completed.replace(tzinfo=UTC)
        if last_completed.astimezone(UTC).date() >= today:
            logger.info(f"Contact sync already completed today at {last_completed}, no catch-up needed")
            return False

    logger.info("No contact sync completed today, running catch-up sync")
    await daily_contact_sync_job(service)
    return True


def setup_scheduler() -> AsyncIOScheduler:
    """Set up and start the background task scheduler."""
    global scheduler

    scheduler = AsyncIOScheduler(timezone=UTC)
    now = datetime.now(UTC)

    if settings.daily_sync_enabled:
        scheduler.add_job(
            daily_contact_sync_job,
            trigger=CronTrigger(hour=settings.daily_sync_hour, minute=0, timezone=UTC),
            id="daily_contact_sync",
            name="Daily Vtiger contact sync",
            replace_existing=True,
            max_instances=1,
        )

        scheduler.add_job(
            startup_catchup_job,
            trigger=DateTrigger(run_date=now + timedelta(seconds=10)),
            id="startup_contact_sync",
            name="Catch-up contact sync on startup",
            replace_existing=True,
        )

    scheduler.start()
    logger.info("Scheduler started")

    return scheduler


def shutdown_scheduler() -> None:
    """Shut down the scheduler gracefully."""
    global scheduler

    if scheduler:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler shut down")
        scheduler = None
