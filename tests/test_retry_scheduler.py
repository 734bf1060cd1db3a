"""Tests for multi-pass retries."""

from collections import Counter

import pytest

from conftest import make_contact
from crmsync.services.batch_fetcher import BatchResult
from crmsync.services.errors import SyncCancelledError
from crmsync.services.retry_scheduler import RetryScheduler


class AttemptCountingFetcher:
    """Each id succeeds once it has been attempted `needed[id]` times."""

    def __init__(self, needed: dict[str, int]):
        self.needed = needed
        self.attempts: Counter[str] = Counter()
        self.calls: list[tuple[list[str], int, float]] = []

    async def fetch_batch(self, ids, concurrency_limit, per_item_timeout):
        self.calls.append((list(ids), concurrency_limit, per_item_timeout))
        result = BatchResult()
        for record_id in ids:
            self.attempts[record_id] += 1
            if self.attempts[record_id] >= self.needed.get(record_id, 1):
                result.succeeded.append(make_contact(record_id))
            else:
                result.failed_ids.append(record_id)
        return result


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


async def _collect(records, into):
    into.extend(records)


class TestPassSettings:
    """Tests for the per-pass backoff."""

    def test_reference_sizing(self):
        """Concurrency narrows and timeout widens every pass."""
        scheduler = RetryScheduler(AttemptCountingFetcher({}), base_concurrency=15, base_timeout=30)

        first = scheduler.pass_settings(1)
        assert (first.concurrency, first.per_item_timeout, first.window_delay) == (7, 45, 1)

        fifth = scheduler.pass_settings(5)
        assert (fifth.concurrency, fifth.per_item_timeout, fifth.window_delay) == (2, 105, 5)

    def test_concurrency_floor(self):
        """Concurrency never drops below one."""
        scheduler = RetryScheduler(AttemptCountingFetcher({}), base_concurrency=1, base_timeout=30)
        assert scheduler.pass_settings(4).concurrency == 1


class TestRetryScheduler:
    """Tests for RetryScheduler.run."""

    @pytest.mark.asyncio
    async def test_failed_set_shrinks_each_pass(self):
        """Ids needing more attempts survive more passes; the set shrinks monotonically."""
        # Two ids each needing 1..5 retry attempts
        needed = {f"{prefix}{n}": n for prefix in ("a", "b") for n in range(1, 6)}
        fetcher = AttemptCountingFetcher(needed)
        scheduler = RetryScheduler(fetcher, base_concurrency=15, base_timeout=30, sleep=SleepRecorder())
        recovered: list = []

        outcome = await scheduler.run(list(needed), lambda r: _collect(r, recovered))

        assert outcome.remaining_by_pass == [8, 6, 4, 2, 0]
        assert all(a > b for a, b in zip(outcome.remaining_by_pass, outcome.remaining_by_pass[1:]))
        assert outcome.remaining == []
        assert outcome.passes_run == 5
        assert len(recovered) == 10

    @pytest.mark.asyncio
    async def test_stops_when_everything_recovered(self):
        """No extra passes run once the failed set is empty."""
        fetcher = AttemptCountingFetcher({})
        scheduler = RetryScheduler(fetcher, base_concurrency=15, base_timeout=30, sleep=SleepRecorder())

        outcome = await scheduler.run(["a", "b"], lambda r: _collect(r, []))

        assert outcome.passes_run == 1
        assert outcome.remaining == []

    @pytest.mark.asyncio
    async def test_respects_max_passes(self):
        """A permanently failing id is retried max_passes times and reported."""
        fetcher = AttemptCountingFetcher({"bad": 100})
        scheduler = RetryScheduler(
            fetcher, base_concurrency=15, base_timeout=30, max_passes=5, sleep=SleepRecorder()
        )

        outcome = await scheduler.run(["bad"], lambda r: _collect(r, []))

        assert outcome.passes_run == 5
        assert outcome.remaining == ["bad"]
        assert fetcher.attempts["bad"] == 5

    @pytest.mark.asyncio
    async def test_windows_and_delays(self):
        """Windows use the pass concurrency and are separated by the pass delay."""
        fetcher = AttemptCountingFetcher({str(i): 100 for i in range(10)})
        sleep = SleepRecorder()
        scheduler = RetryScheduler(
            fetcher, base_concurrency=8, base_timeout=30, max_passes=2, delay_step=1.0, sleep=sleep
        )

        await scheduler.run([str(i) for i in range(10)], lambda r: _collect(r, []))

        # Pass 1: width 4 -> 3 windows; pass 2: width 2 -> 5 windows
        assert [len(ids) for ids, _, _ in fetcher.calls] == [4, 4, 2, 2, 2, 2, 2, 2]
        assert [timeout for _, _, timeout in fetcher.calls][:3] == [45, 45, 45]
        assert sleep.delays == [1.0, 1.0, 2.0, 2.0, 2.0, 2.0]

    @pytest.mark.asyncio
    async def test_pass_callback(self):
        """on_pass reports the pass number, recovered count and what still fails."""
        fetcher = AttemptCountingFetcher({"a": 1, "b": 2})
        scheduler = RetryScheduler(fetcher, base_concurrency=4, base_timeout=30, sleep=SleepRecorder())
        passes = []

        async def on_pass(number, recovered, still_failing):
            passes.append((number, recovered, list(still_failing)))

        await scheduler.run(["a", "b"], lambda r: _collect(r, []), on_pass=on_pass)

        assert passes == [(1, 1, ["b"]), (2, 1, [])]

    @pytest.mark.asyncio
    async def test_abort_between_windows(self):
        """The abort check runs before every window."""
        fetcher = AttemptCountingFetcher({})
        scheduler = RetryScheduler(fetcher, base_concurrency=2, base_timeout=30, sleep=SleepRecorder())

        def abort():
            if fetcher.calls:
                raise SyncCancelledError("Sync cancelled by alice")

        with pytest.raises(SyncCancelledError):
            await scheduler.run(["a", "b", "c", "d"], lambda r: _collect(r, []), raise_if_aborted=abort)

        assert len(fetcher.calls) == 1
