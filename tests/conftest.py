import asyncio
import os
import sys
import time
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

# Ensure project root is importable
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from taskmail.crud import ExecutionLogStore, TaskStore, UserDirectory  # noqa: E402
from taskmail.database import create_schema, make_engine, make_sessionmaker  # noqa: E402
from taskmail.features.reminders import TaskScheduler  # noqa: E402
from tests.fakes import RecordingSender  # noqa: E402

MEMORY_DB_URL = "sqlite+aiosqlite://"
USER_ID = "u_rent"
USER_EMAIL = "renter@example.com"


def soon(seconds: float) -> datetime:
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.05) -> bool:
    """Poll an async predicate until it holds or the timeout elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if await predicate():
            return True
        await asyncio.sleep(interval)
    return await predicate()


async def entries_with_status(logs: ExecutionLogStore, user_id: str, *statuses: str):
    entries = await logs.list_by_user(user_id)
    return [e for e in entries if e.status in statuses]


@pytest_asyncio.fixture
async def session_factory():
    engine = make_engine(MEMORY_DB_URL)
    await create_schema(engine)
    yield make_sessionmaker(engine)
    await engine.dispose()


@pytest.fixture
def task_store(session_factory):
    return TaskStore(session_factory)


@pytest.fixture
def log_store(session_factory):
    return ExecutionLogStore(session_factory)


@pytest.fixture
def user_directory(session_factory):
    return UserDirectory(session_factory)


@pytest.fixture
def sender():
    return RecordingSender()


@pytest_asyncio.fixture
async def user(user_directory):
    return await user_directory.upsert(USER_ID, USER_EMAIL, name="Renter")


@pytest_asyncio.fixture
async def scheduler(task_store, log_store, user_directory, sender):
    sched = TaskScheduler(task_store, log_store, user_directory, sender, send_timeout=2.0)
    sched.start()
    yield sched
    await sched.shutdown()
