import asyncio
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from pgjobs.config.settings import get_settings
from pgjobs.core.events import EventLog, JobEvent
from pgjobs.core.registries import HandlerRegistry
from pgjobs.infra.adapters import Adapter, MemoryAdapter, PostgresAdapter
from pgjobs.infra.database import Base
from pgjobs.jobs import models  # noqa: F401
from pgjobs.jobs.models import JOBS_TABLE


class FakeClock:
    """Clock whose time only moves when the code under test sleeps or a test advances it."""

    def __init__(self, start: float = 0.0):
        self.time = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.time

    async def sleep(self, duration: float) -> None:
        self.sleeps.append(duration)
        self.time += duration

    def advance(self, seconds: float) -> None:
        self.time += seconds


class RecordingHandler:
    """Records the arguments of every run."""

    def __init__(self):
        self.calls: list[tuple[Any, ...]] = []

    async def run(self, ctx, *args):
        self.calls.append(args)


class FailingHandler:
    def __init__(self, message: str = "handler exploded"):
        self.message = message
        self.runs = 0

    async def run(self, ctx, *args):
        self.runs += 1
        raise RuntimeError(self.message)


class SlowHandler:
    """Sleeps for a long time, ignoring stop requests."""

    def __init__(self, seconds: float = 5.0):
        self.seconds = seconds
        self.started = asyncio.Event()

    async def run(self, ctx, *args):
        self.started.set()
        await asyncio.sleep(self.seconds)


class CooperativeHandler:
    """Runs until the worker asks it to stop."""

    def __init__(self):
        self.started = asyncio.Event()
        self.stopped_cleanly = False

    async def run(self, ctx, *args):
        self.started.set()
        while not ctx.stop_requested:
            await asyncio.sleep(0.01)
        self.stopped_cleanly = True


class EventRecorder:
    """EventLog listener keeping every event it sees."""

    def __init__(self):
        self.events: list[tuple[JobEvent, dict[str, Any]]] = []

    def __call__(self, event: JobEvent, fields) -> None:
        self.events.append((event, dict(fields)))

    def of(self, event: JobEvent) -> list[dict[str, Any]]:
        return [fields for seen, fields in self.events if seen is event]


@asynccontextmanager
async def held_lock(adapter: Adapter, job_id: int) -> AsyncGenerator[None, None]:
    """Hold a job's advisory lock from another session for the duration of the block."""
    held = asyncio.Event()
    release = asyncio.Event()

    async def hold():
        async with adapter.checkout():
            assert await adapter.try_lock(job_id)
            held.set()
            await release.wait()
            await adapter.unlock(job_id)

    task = asyncio.create_task(hold())
    await held.wait()
    try:
        yield
    finally:
        release.set()
        await task


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def adapter():
    return MemoryAdapter()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def events(recorder):
    return EventLog(listeners=[recorder])


@pytest.fixture
def recording_handler():
    return RecordingHandler()


@pytest.fixture
def registry(recording_handler):
    registry = HandlerRegistry()
    registry.register("record", recording_handler)
    return registry


@pytest.fixture
async def pg_adapter():
    """PostgresAdapter on an empty jobs table; requires DATABASE_URL."""
    database_url = os.getenv("DATABASE_URL")
    if not database_url or "postgresql" not in database_url:
        pytest.skip("DATABASE_URL does not point at PostgreSQL")

    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    engine = create_async_engine(database_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.execute(text(f"TRUNCATE {JOBS_TABLE} RESTART IDENTITY"))

    adapter = PostgresAdapter(engine)
    yield adapter
    await adapter.close()
