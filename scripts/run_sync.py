#!/usr/bin/env python3
"""
Run the Vtiger contact sync from the command line.

Usage:
    python scripts/run_sync.py [--started-by NAME]
    python scripts/run_sync.py --cancel [--started-by NAME]
    python scripts/run_sync.py --status

SIGINT/SIGTERM stop the run; it is marked failed and the next run resumes
from its last checkpoint.
"""

import argparse
import asyncio
import logging
import signal
import sys

from crmsync.models import SyncStatus
from crmsync.services.errors import AlreadyRunningError
from crmsync.services.progress import LoggingProgressObserver
from crmsync.services.sync_service import ContactSyncService

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("run_sync")


async def run_sync(service: ContactSyncService, started_by: str) -> int:
    loop = asyncio.get_running_loop()
    task = asyncio.create_task(
        service.start_sync(observer=LoggingProgressObserver(), started_by=started_by)
    )
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, task.cancel)

    try:
        outcome = await task
    except AlreadyRunningError as e:
        logger.error(str(e))
        return 2
    except asyncio.CancelledError:
        logger.error("Sync interrupted by signal")
        return 130

    logger.info(
        f"Run #{outcome.run_id} {outcome.status}: {outcome.created} created, "
        f"{outcome.updated} updated, {outcome.errors} errors, "
        f"{len(outcome.failed_ids)} ids still failing"
    )
    if outcome.message:
        logger.info(outcome.message)
    return 0 if outcome.status == SyncStatus.COMPLETED else 1


async def cancel_sync(service: ContactSyncService, cancelled_by: str) -> int:
    result = await service.cancel_sync(cancelled_by=cancelled_by, reason="Cancelled from CLI")
    logger.info(result.message)
    return 0 if result.cancelled else 1


async def show_status(service: ContactSyncService) -> int:
    run = await service.latest_run()
    if run is None:
        logger.info("No sync runs yet")
        return 0
    logger.info(
        f"Run #{run.id}: {run.status}/{run.phase}, processed {run.processed_count}/"
        f"{run.total_expected}, last id {run.last_processed_id}, started {run.started_at}"
    )
    if run.error_message:
        logger.info(run.error_message)
    return 0


async def main(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(description="Vtiger contact sync")
    parser.add_argument("--started-by", default="cli")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--cancel", action="store_true", help="Cancel the running sync")
    group.add_argument("--status", action="store_true", help="Show the latest run")
    args = parser.parse_args(argv)

    service = ContactSyncService()
    if args.cancel:
        return await cancel_sync(service, args.started_by)
    if args.status:
        return await show_status(service)
    return await run_sync(service, args.started_by)


if __name__ == "__main__":
    sys.exit(asyncio.run(main(sys.argv[1:])))
