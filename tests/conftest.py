"""Pytest fixtures for the contact sync tests."""

import asyncio
from collections import Counter
from collections.abc import AsyncGenerator
from typing import Any

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import crmsync.models  # noqa: F401
from crmsync.config import Settings
from crmsync.database import Base, get_db
from crmsync.main import app
from crmsync.schemas.contact import ContactRecord
from crmsync.services.checkpoint_store import CheckpointStore
from crmsync.services.persistence import PersistenceSink
from crmsync.services.sync_service import ContactSyncService, get_sync_service


class FakeRemoteClient:
    """
    In-memory stand-in for VtigerClient.

    Args:
        ids: Remote contact ids, in discovery order
        failures: id -> number of initial fetch attempts that raise
        missing: ids the remote reports as not found (None)
        hang_ids: ids whose fetch never returns
        count: what count_all reports (defaults to len(ids); None simulates a failed COUNT)
        list_errors: exceptions raised by the first list_ids calls
        list_delay: seconds list_ids takes
        fetch_delay: seconds every fetch takes
    """

    def __init__(
        self,
        ids: list[str],
        failures: dict[str, int] | None = None,
        missing: set[str] | None = None,
        hang_ids: set[str] | None = None,
        count: int | None | str = "auto",
        list_errors: list[Exception] | None = None,
        list_delay: float = 0.0,
        fetch_delay: float = 0.0,
    ):
        self.ids = list(ids)
        self.failures = failures or {}
        self.missing = missing or set()
        self.hang_ids = hang_ids or set()
        self.count = len(self.ids) if count == "auto" else count
        self.list_errors = list(list_errors or [])
        self.list_delay = list_delay
        self.fetch_delay = fetch_delay

        self.attempts: Counter[str] = Counter()
        self.list_calls = 0
        self.closed = False

    async def __aenter__(self) -> "FakeRemoteClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self.closed = True

    async def count_all(self) -> int | None:
        return self.count

    async def list_ids(self, progress_callback=None, total_hint=None) -> list[str]:
        self.list_calls += 1
        if self.list_errors:
            raise self.list_errors.pop(0)
        if self.list_delay:
            await asyncio.sleep(self.list_delay)

        for offset in range(0, len(self.ids), 100):
            if progress_callback:
                progress_callback(min(offset + 100, len(self.ids)), total_hint)
        return list(self.ids)

    async def fetch_by_id(self, record_id: str) -> ContactRecord | None:
        self.attempts[record_id] += 1
        if record_id in self.hang_ids:
            await asyncio.sleep(3600)
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)
        if self.attempts[record_id] <= self.failures.get(record_id, 0):
            raise httpx.ConnectError(f"Connection reset fetching {record_id}")
        if record_id in self.missing:
            return None
        return make_contact(record_id)


class RecordingObserver:
    """Collects progress notifications in order."""

    def __init__(self):
        self.events: list[tuple[str, Any]] = []

    async def on_start(self, total):
        self.events.append(("start", total))

    async def on_batch(self, batch_size, total_processed, total):
        self.events.append(("batch", (batch_size, total_processed, total)))

    async def on_complete(self):
        self.events.append(("complete", None))

    async def on_error(self, error):
        self.events.append(("error", error))

    @property
    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.events]


def make_contact(record_id: str, **overrides: Any) -> ContactRecord:
    fields = {
        "first_name": f"First{record_id}",
        "last_name": f"Last{record_id}",
        "email": f"contact{record_id}@example.com",
        "job_title": "Engineer",
    }
    fields.update(overrides)
    return ContactRecord(external_id=record_id, **fields)


def make_ids(count: int) -> list[str]:
    return [str(i) for i in range(1, count + 1)]


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings sized like production but with short waits."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        vtiger_server_url="http://vtiger.test",
        vtiger_username="sync",
        vtiger_access_key="secret",
        concurrency_limit=15,
        flush_threshold=100,
        per_item_timeout=1.0,
        max_retry_passes=5,
        retry_timeout_step=0.5,
        retry_delay_step=0.0,
        discovery_timeout=5.0,
        discovery_retries=3,
        discovery_backoff_initial=0.01,
        discovery_backoff_max=0.05,
        discovery_progress_interval=0.0,
        watchdog_interval=0.05,
        stall_threshold=30.0,
        finalize_max_attempts=3,
        finalize_backoff=0.01,
        daily_sync_enabled=False,
        debug=True,
    )


@pytest_asyncio.fixture
async def async_engine(test_settings):
    """File-backed SQLite engine; every session gets its own connection."""
    engine = create_async_engine(test_settings.database_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def store(session_maker, test_settings) -> CheckpointStore:
    return CheckpointStore(
        session_maker,
        finalize_max_attempts=test_settings.finalize_max_attempts,
        finalize_backoff=test_settings.finalize_backoff,
    )


@pytest.fixture
def sink(session_maker) -> PersistenceSink:
    return PersistenceSink(session_maker)


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def remote() -> FakeRemoteClient:
    return FakeRemoteClient(make_ids(40), fetch_delay=0.01)


@pytest.fixture
def sync_service(session_maker, test_settings, remote) -> ContactSyncService:
    return ContactSyncService(
        session_maker=session_maker,
        client_factory=lambda: remote,
        settings=test_settings,
    )


@pytest_asyncio.fixture
async def client(session_maker, sync_service) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client with database and service overrides."""

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sync_service] = lambda: sync_service
    app.state.limiter.reset()

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    await sync_service.shutdown()
    app.dependency_overrides.clear()
