"""
Pytest configuration and fixtures for pg_jobqueue tests.
"""

import asyncio
import os
from typing import AsyncGenerator

import asyncpg
import pytest

from pg_jobqueue import (
    EventBroadcaster,
    HandlerRegistry,
    JobScheduler,
    JobStatus,
    MemoryJobStore,
    PostgresJobStore,
)


# Database connection parameters from environment
DB_HOST = os.getenv("PGHOST", "localhost")
DB_PORT = int(os.getenv("PGPORT", "5432"))
DB_USER = os.getenv("PGUSER", "scheduler")
DB_PASSWORD = os.getenv("PGPASSWORD", "scheduler123")
DB_NAME = os.getenv("PGDATABASE", "scheduler_db")


class RecordingChannel:
    """Observer channel that keeps every message written to it."""

    def __init__(self):
        self.messages = []

    def write(self, message: str):
        self.messages.append(message)

    def events(self):
        return [m.split("\n", 1)[0][len("event: "):] for m in self.messages]


class BrokenChannel:
    """Observer channel whose connection has gone away."""

    def __init__(self):
        self.attempts = 0

    def write(self, message: str):
        self.attempts += 1
        raise ConnectionResetError("Connection reset by peer")


class SlowReadJobStore(MemoryJobStore):
    """
    In-memory store whose reads suspend after fetching, the way a database
    round trip does, so other tasks can write in between.
    """

    def __init__(self, delay: float = 0.01):
        super().__init__()
        self.delay = delay

    async def get(self, job_id):
        job = await super().get(job_id)
        await asyncio.sleep(self.delay)
        return job

    async def next_pending(self):
        job = await super().next_pending()
        await asyncio.sleep(self.delay)
        return job


class RecordingBroadcaster(EventBroadcaster):
    """Broadcaster that also remembers every (event, data) pair it sent."""

    def __init__(self):
        super().__init__()
        self.sent = []

    def broadcast(self, event, data):
        self.sent.append((event, data))
        super().broadcast(event, data)

    def names(self):
        return [event for event, _ in self.sent]


@pytest.fixture
def recording_channel():
    """Factory for channels that record what they receive."""
    return RecordingChannel


@pytest.fixture
def broken_channel():
    """Factory for channels whose writes always fail."""
    return BrokenChannel


@pytest.fixture
def store() -> MemoryJobStore:
    return MemoryJobStore()


@pytest.fixture
def slow_store() -> SlowReadJobStore:
    return SlowReadJobStore()


@pytest.fixture
async def broadcaster() -> AsyncGenerator[RecordingBroadcaster, None]:
    b = RecordingBroadcaster()
    yield b
    b.stop_heartbeat()


@pytest.fixture
def registry() -> HandlerRegistry:
    return HandlerRegistry()


@pytest.fixture
async def scheduler(store, broadcaster, registry) -> AsyncGenerator[JobScheduler, None]:
    """
    Create a fresh scheduler over the in-memory store for each test.
    The timer is not started; tests drive run_once() directly.
    """
    sched = JobScheduler(store, broadcaster, registry)

    yield sched

    await sched.shutdown(timeout=1)


@pytest.fixture
def sample_handler():
    """Handler that succeeds with a fixed result."""
    async def handler(job, report_progress):
        await asyncio.sleep(0.01)  # Simulate some work
        return {"result": "ok"}
    return handler


@pytest.fixture
def failing_handler():
    """Handler that always fails."""
    async def handler(job, report_progress):
        await asyncio.sleep(0.01)
        raise ValueError("boom")
    return handler


@pytest.fixture
def wait_for_status():
    """Poll the store until a job reaches one of the given statuses."""
    async def _wait(job_store, job_id, *statuses: JobStatus, timeout: float = 2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            job = await job_store.get(job_id)
            if job is not None and job.status in statuses:
                return job
            if loop.time() >= deadline:
                raise AssertionError(f"Job {job_id} did not reach {statuses}; last status: "
                                     f"{job.status if job else None}")
            await asyncio.sleep(0.01)
    return _wait


# PostgreSQL fixtures (integration tests)

@pytest.fixture
async def db_pool() -> AsyncGenerator[asyncpg.Pool, None]:
    """Create a database connection pool, skipping the test if PostgreSQL is unreachable."""
    try:
        pool = await asyncpg.create_pool(
            host=DB_HOST,
            port=DB_PORT,
            user=DB_USER,
            password=DB_PASSWORD,
            database=DB_NAME,
            min_size=1,
            max_size=5,
            timeout=5,
        )
    except (OSError, asyncpg.PostgresError, asyncio.TimeoutError) as e:
        pytest.skip(f"PostgreSQL not available: {e}")
    yield pool
    await pool.close()


@pytest.fixture
async def clean_db(db_pool: asyncpg.Pool) -> AsyncGenerator[asyncpg.Pool, None]:
    """
    Clean database fixture that drops the jobs table before and after each test.
    """
    await db_pool.execute("DROP TABLE IF EXISTS jobs CASCADE")

    yield db_pool

    await db_pool.execute("DROP TABLE IF EXISTS jobs CASCADE")


@pytest.fixture
async def pg_store(clean_db: asyncpg.Pool) -> PostgresJobStore:
    job_store = PostgresJobStore(clean_db, query_retries=1)
    await job_store.initialize_db()
    return job_store
