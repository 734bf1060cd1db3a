"""Bounded-concurrency fetching of contacts by id."""

import asyncio
import errno
import logging
import socket
import time
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from crmsync.schemas.contact import ContactRecord

logger = logging.getLogger(__name__)

_RETRYABLE_ERRNOS = {errno.ECONNRESET, errno.ECONNABORTED, errno.ETIMEDOUT, errno.ECONNREFUSED}


class ContactFetcher(Protocol):
    async def fetch_by_id(self, record_id: str) -> ContactRecord | None: ...


@dataclass
class BatchResult:
    succeeded: list[ContactRecord] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)


def is_retryable_error(exc: BaseException) -> bool:
    """
    Transient failures: timeouts, resets, aborted connections and DNS
    failures. Follows explicit __cause__ chains so wrapped client errors
    classify like the transport error underneath; an error merely raised
    while handling another one does not inherit its classification.
    """
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(
            current,
            (
                TimeoutError,
                httpx.TimeoutException,
                httpx.NetworkError,
                httpx.RemoteProtocolError,
                ConnectionResetError,
                ConnectionAbortedError,
                socket.gaierror,
            ),
        ):
            return True
        if isinstance(current, OSError) and current.errno in _RETRYABLE_ERRNOS:
            return True
        current = current.__cause__
    return False


class BatchFetcher:
    """
    Fetches a window of ids in parallel.

    Every fetch has its own timeout and the whole window has a ceiling of
    per_item_timeout * len(ids). Individual failures never raise: they come
    back in failed_ids, and if the ceiling trips every id of the window is
    reported failed so none is silently dropped.
    """

    def __init__(self, client: ContactFetcher):
        self.client = client

    async def fetch_batch(
        self,
        ids: list[str],
        concurrency_limit: int,
        per_item_timeout: float,
    ) -> BatchResult:
        if not ids:
            return BatchResult()

        semaphore = asyncio.Semaphore(max(1, concurrency_limit))

        async def fetch_one(record_id: str) -> ContactRecord | None:
            started = time.monotonic()
            async with semaphore:
                try:
                    async with asyncio.timeout(per_item_timeout):
                        record = await self.client.fetch_by_id(record_id)
                except Exception as e:
                    elapsed = time.monotonic() - started
                    kind = "TIMEOUT" if isinstance(e, TimeoutError) else (
                        "retryable" if is_retryable_error(e) else "error"
                    )
                    logger.warning(f"Fetch {kind}: contact {record_id} failed after {elapsed:.1f}s - {e!r}")
                    return None

            if record is None:
                logger.warning(f"Fetch returned no record for contact {record_id}")
            return record

        tasks = [asyncio.create_task(fetch_one(record_id)) for record_id in ids]
        batch_timeout = per_item_timeout * len(ids)

        try:
            async with asyncio.timeout(batch_timeout):
                results = await asyncio.gather(*tasks, return_exceptions=True)
        except TimeoutError:
            logger.error(
                f"Batch of {len(ids)} timed out after {batch_timeout:.0f}s - "
                "marking every id failed for retry"
            )
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            return BatchResult(failed_ids=list(ids))
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        batch = BatchResult()
        for record_id, outcome in zip(ids, results):
            if isinstance(outcome, BaseException):
                logger.error(f"Fetch task for contact {record_id} raised unexpectedly: {outcome!r}")
                batch.failed_ids.append(record_id)
            elif outcome is None:
                batch.failed_ids.append(record_id)
            else:
                batch.succeeded.append(outcome)

        logger.info(f"Batch results: {len(batch.succeeded)} fetched, {len(batch.failed_ids)} failed")
        return batch
