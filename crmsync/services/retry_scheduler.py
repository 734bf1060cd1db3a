"""Multi-pass retry of ids that failed to fetch."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from crmsync.schemas.contact import ContactRecord
from crmsync.services.batch_fetcher import BatchFetcher

logger = logging.getLogger(__name__)

WindowHandler = Callable[[list[ContactRecord]], Awaitable[None]]
PassHandler = Callable[[int, int, list[str]], Awaitable[None]]


@dataclass(frozen=True)
class PassSettings:
    concurrency: int
    per_item_timeout: float
    window_delay: float


@dataclass
class RetryOutcome:
    remaining: list[str] = field(default_factory=list)
    passes_run: int = 0
    remaining_by_pass: list[int] = field(default_factory=list)


class RetryScheduler:
    """
    Re-fetches the failed-id set in passes, backing off each time.

    Pass n (starting at 1) narrows concurrency to base // (n + 1), widens
    the per-item timeout by timeout_step * n and pauses delay_step * n
    seconds between its windows. The failed set after a pass is exactly
    what failed again in that pass.
    """

    def __init__(
        self,
        fetcher: BatchFetcher,
        base_concurrency: int,
        base_timeout: float,
        max_passes: int = 5,
        timeout_step: float = 15.0,
        delay_step: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.fetcher = fetcher
        self.base_concurrency = base_concurrency
        self.base_timeout = base_timeout
        self.max_passes = max_passes
        self.timeout_step = timeout_step
        self.delay_step = delay_step
        self._sleep = sleep

    def pass_settings(self, pass_number: int) -> PassSettings:
        return PassSettings(
            concurrency=max(1, self.base_concurrency // (pass_number + 1)),
            per_item_timeout=self.base_timeout + self.timeout_step * pass_number,
            window_delay=self.delay_step * pass_number,
        )

    async def run(
        self,
        failed_ids: list[str],
        on_window: WindowHandler,
        on_pass: PassHandler | None = None,
        raise_if_aborted: Callable[[], None] | None = None,
    ) -> RetryOutcome:
        """
        Retry until the failed set is empty or max_passes ran.

        Args:
            failed_ids: Ids that failed in the main pass
            on_window: Receives the records recovered by each window
            on_pass: Called with (pass_number, recovered, still_failing) after each pass
            raise_if_aborted: Called between windows; raises to stop the run

        Returns:
            The ids still failing and per-pass bookkeeping
        """
        outcome = RetryOutcome(remaining=list(dict.fromkeys(failed_ids)))

        for pass_number in range(1, self.max_passes + 1):
            if not outcome.remaining:
                break

            current = self.pass_settings(pass_number)
            logger.info(
                f"Retry pass {pass_number}/{self.max_passes}: {len(outcome.remaining)} ids, "
                f"concurrency {current.concurrency}, timeout {current.per_item_timeout:.0f}s"
            )

            still_failing: list[str] = []
            recovered = 0
            for start in range(0, len(outcome.remaining), current.concurrency):
                if raise_if_aborted:
                    raise_if_aborted()
                if start > 0 and current.window_delay > 0:
                    await self._sleep(current.window_delay)

                window = outcome.remaining[start : start + current.concurrency]
                batch = await self.fetcher.fetch_batch(
                    window, current.concurrency, current.per_item_timeout
                )
                still_failing.extend(batch.failed_ids)
                recovered += len(batch.succeeded)
                await on_window(batch.succeeded)

            outcome.remaining = still_failing
            outcome.passes_run = pass_number
            outcome.remaining_by_pass.append(len(still_failing))

            logger.info(
                f"Retry pass {pass_number} recovered {recovered}, "
                f"{len(still_failing)} still failing"
            )
            if on_pass:
                await on_pass(pass_number, recovered, still_failing)

        if outcome.remaining:
            logger.warning(
                f"{len(outcome.remaining)} ids still failing after {outcome.passes_run} retry passes"
            )
        return outcome
