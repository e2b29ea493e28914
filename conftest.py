"""Root conftest: shared fakes and fixtures for the prepcal test suite."""

from __future__ import annotations

import asyncio
import shutil
import uuid
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from prepcal.calendar.native import NativeScriptAdapter
from prepcal.calendar.synchronizer import CalendarSynchronizer
from prepcal.core.settings import InMemorySettingsStore

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None

# Tuesday, 6 January 2026, 10:00 UTC
NOW = datetime(2026, 1, 6, 10, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = NOW) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


@dataclass
class RunnerCall:
    script_path: Path
    timeout: float
    body: str


@dataclass
class FakeRunner:
    """ScriptRunner double that records each invocation.

    ``gate`` holds every run until it is set, which keeps an extraction in
    flight for concurrency tests.
    """

    output: str = ""
    error: Exception | None = None
    gate: asyncio.Event | None = None
    calls: list[RunnerCall] = field(default_factory=list)

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def run(self, script_path: Path, timeout: float) -> str:
        self.calls.append(RunnerCall(script_path, timeout, script_path.read_text()))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.output


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def store() -> InMemorySettingsStore:
    return InMemorySettingsStore()


@pytest.fixture
def native_adapter(runner: FakeRunner, clock: FakeClock) -> NativeScriptAdapter:
    return NativeScriptAdapter(runner, clock=clock, tz=UTC, platform="darwin")


@pytest.fixture
def synchronizer(
    store: InMemorySettingsStore, native_adapter: NativeScriptAdapter, clock: FakeClock
) -> CalendarSynchronizer:
    return CalendarSynchronizer(store, native=native_adapter, clock=clock)


# ---------------------------------------------------------------------------
# PostgreSQL (integration)
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer; each test gets its own database."""
    if not docker_available:
        pytest.skip("Docker not available")
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
async def postgres_pool(postgres_container: PostgresContainer) -> AsyncIterator[Pool]:
    """Provision a fresh database and return an asyncpg pool connected to it."""
    import asyncpg

    admin_dsn = postgres_container.get_connection_url(driver=None)
    db_name = f"test_{uuid.uuid4().hex[:12]}"
    admin = await asyncpg.connect(admin_dsn)
    try:
        await admin.execute(f'CREATE DATABASE "{db_name}"')
    finally:
        await admin.close()

    base, _, _ = admin_dsn.rpartition("/")
    pool = await asyncpg.create_pool(f"{base}/{db_name}", min_size=1, max_size=3)
    try:
        yield pool
    finally:
        await pool.close()
