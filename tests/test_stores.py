from datetime import datetime, timedelta, timezone

import pytest

from taskmail.clock import as_utc
from taskmail.crud import ExecutionLogStore, TaskStore
from taskmail.database import make_engine, make_sessionmaker
from taskmail.errors import NotFoundError, StoreError
from taskmail.models import LogStatus, TaskState

T0 = datetime(2030, 5, 1, 9, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_create_and_get_task(task_store):
    task = await task_store.create("u1", "Pay rent", T0, "Asia/Kolkata")
    assert task.id is not None

    fetched = await task_store.get(task.id, "u1")
    assert fetched.task_name == "Pay rent"
    assert as_utc(fetched.next_execution) == T0
    assert fetched.timezone == "Asia/Kolkata"
    assert fetched.state == TaskState.scheduled.value


@pytest.mark.asyncio
async def test_tasks_are_scoped_to_their_owner(task_store):
    task = await task_store.create("u1", "Private", T0)

    with pytest.raises(NotFoundError):
        await task_store.get(task.id, "someone-else")
    with pytest.raises(NotFoundError):
        await task_store.update(task.id, "someone-else", task_name="Hijacked")
    with pytest.raises(NotFoundError):
        await task_store.delete(task.id, "someone-else")

    assert (await task_store.get(task.id, "u1")).task_name == "Private"


@pytest.mark.asyncio
async def test_update_only_touches_given_fields(task_store):
    task = await task_store.create("u1", "Gym", T0)
    later = T0 + timedelta(hours=2)

    updated = await task_store.update(task.id, "u1", next_execution=later, state=TaskState.fired)
    assert updated.task_name == "Gym"
    assert as_utc(updated.next_execution) == later
    assert updated.state == TaskState.fired.value

    with pytest.raises(ValueError):
        await task_store.update(task.id, "u1", user_id="u2")


@pytest.mark.asyncio
async def test_delete_returns_removed_task(task_store):
    task = await task_store.create("u1", "Dentist", T0)
    removed = await task_store.delete(task.id, "u1")
    assert removed.task_name == "Dentist"

    with pytest.raises(NotFoundError):
        await task_store.get(task.id, "u1")
    with pytest.raises(NotFoundError):
        await task_store.delete(task.id, "u1")


@pytest.mark.asyncio
async def test_delete_with_history_removes_only_that_tasks_entries(task_store, log_store):
    doomed = await task_store.create("u1", "Water plants", T0)
    other = await task_store.create("u1", "Water plants", T0)
    for task in (doomed, doomed, other):
        await log_store.append(task_id=task.id, task_name=task.task_name, user_id="u1", status=LogStatus.success, message="ok")

    removed, count = await task_store.delete_with_history(doomed.id, "u1")
    assert removed.id == doomed.id
    assert count == 2
    assert [e.task_id for e in await log_store.list_by_user("u1")] == [other.id]

    with pytest.raises(NotFoundError):
        await task_store.delete_with_history(other.id, "someone-else")
    assert len(await log_store.list_by_user("u1")) == 1


@pytest.mark.asyncio
async def test_listing_by_user_and_scheduled(task_store):
    late = await task_store.create("u1", "Late", T0 + timedelta(days=1))
    early = await task_store.create("u1", "Early", T0)
    other = await task_store.create("u2", "Other", T0)
    await task_store.update(other.id, "u2", state=TaskState.canceled)

    assert [t.id for t in await task_store.list_by_user("u1")] == [early.id, late.id]
    assert {t.id for t in await task_store.list_scheduled()} == {early.id, late.id}


@pytest.mark.asyncio
async def test_claim_for_fire_is_single_shot(task_store):
    task = await task_store.create("u1", "Once", T0)

    claimed = await task_store.claim_for_fire(task.id, T0)
    assert claimed is not None
    assert claimed.state == TaskState.fired.value

    assert await task_store.claim_for_fire(task.id, T0) is None


@pytest.mark.asyncio
async def test_claim_for_fire_rejects_rescheduled_or_missing_tasks(task_store):
    task = await task_store.create("u1", "Moved", T0)
    await task_store.update(task.id, "u1", next_execution=T0 + timedelta(hours=1))

    assert await task_store.claim_for_fire(task.id, T0) is None
    assert await task_store.claim_for_fire(9999, T0) is None
    assert (await task_store.get(task.id, "u1")).state == TaskState.scheduled.value


@pytest.mark.asyncio
async def test_history_is_newest_first(log_store):
    for minutes, status in [(0, LogStatus.updated), (10, LogStatus.success), (5, LogStatus.failure)]:
        await log_store.append(
            task_id=1,
            task_name="Pay rent",
            user_id="u1",
            status=status,
            message=status.value,
            execution_time=T0 + timedelta(minutes=minutes),
        )
    await log_store.append(task_id=2, task_name="x", user_id="u2", status=LogStatus.success, message="ok")

    entries = await log_store.list_by_user("u1")
    assert [e.status for e in entries] == ["Success", "Failure", "Updated"]
    assert all(e.user_id == "u1" for e in entries)


@pytest.mark.asyncio
async def test_cascade_by_task_id_leaves_same_named_tasks_alone(log_store):
    for task_id in (1, 2):
        await log_store.append(task_id=task_id, task_name="Water plants", user_id="u1", status=LogStatus.success, message="ok")

    assert await log_store.delete_by_task(1, "u1") == 1
    remaining = await log_store.list_by_user("u1")
    assert [e.task_id for e in remaining] == [2]


@pytest.mark.asyncio
async def test_cascade_by_name_removes_every_same_named_entry(log_store):
    for task_id in (1, 2):
        await log_store.append(task_id=task_id, task_name="Water plants", user_id="u1", status=LogStatus.success, message="ok")
    await log_store.append(task_id=3, task_name="Water plants", user_id="u2", status=LogStatus.success, message="ok")

    assert await log_store.delete_by_task_name_and_user("Water plants", "u1") == 2
    assert await log_store.list_by_user("u1") == []
    assert len(await log_store.list_by_user("u2")) == 1


@pytest.mark.asyncio
async def test_user_directory_upsert_and_lookup(user_directory):
    created = await user_directory.upsert("u1", "old@example.com", name="Ana")
    updated = await user_directory.upsert("u1", "new@example.com")
    assert updated.id == created.id
    assert updated.email == "new@example.com"
    assert updated.name == "Ana"

    assert (await user_directory.get_by_id("u1")).email == "new@example.com"
    with pytest.raises(NotFoundError, match="User not found"):
        await user_directory.get_by_id("ghost")


@pytest.mark.asyncio
async def test_database_failures_surface_as_store_error():
    # No schema created: every statement fails.
    engine = make_engine("sqlite+aiosqlite://")
    factory = make_sessionmaker(engine)
    try:
        with pytest.raises(StoreError):
            await TaskStore(factory).create("u1", "Broken", T0)
        with pytest.raises(StoreError):
            await ExecutionLogStore(factory).list_by_user("u1")
    finally:
        await engine.dispose()
