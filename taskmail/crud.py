import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional, Tuple

from sqlalchemy import delete, desc, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskmail.clock import as_utc
from taskmail.errors import NotFoundError, StoreError
from taskmail.models import ExecutionLog, LogStatus, Task, TaskState, User

logger = logging.getLogger("taskmail.crud")

_TASK_FIELDS = ("task_name", "next_execution", "timezone", "state")


# --- Generic DB helpers ------------------------------------------------------

@asynccontextmanager
async def _session(factory: async_sessionmaker, op: str) -> AsyncIterator[AsyncSession]:
    """Open a session; any database failure surfaces as StoreError."""
    try:
        async with factory() as session:
            yield session
    except SQLAlchemyError as e:
        logger.error("%s failed: %s", op, e)
        raise StoreError(f"{op} failed: {e}") from e


async def _commit_refresh(session: AsyncSession, obj):
    await session.commit()
    await session.refresh(obj)
    return obj


async def _owned_task(session: AsyncSession, task_id: int, user_id: str) -> Task:
    task = await session.get(Task, task_id)
    if task is None or task.user_id != user_id:
        logger.warning("Task id=%s not found for user %s.", task_id, user_id)
        raise NotFoundError("Task not found")
    return task


# --- Task Operations ---------------------------------------------------------

class TaskStore:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._factory = session_factory

    async def create(
        self,
        user_id: str,
        task_name: str,
        next_execution: datetime,
        timezone_name: str = "UTC",
    ) -> Task:
        async with _session(self._factory, "create task") as dbs:
            task = Task(
                user_id=user_id,
                task_name=task_name,
                next_execution=next_execution,
                timezone=timezone_name,
                state=TaskState.scheduled.value,
            )
            dbs.add(task)
            await _commit_refresh(dbs, task)
            logger.info("Created task %s for user %s", task.id, user_id)
            return task

    async def get(self, task_id: int, user_id: str) -> Task:
        async with _session(self._factory, "get task") as dbs:
            return await _owned_task(dbs, task_id, user_id)

    async def update(self, task_id: int, user_id: str, **fields) -> Task:
        unknown = set(fields) - set(_TASK_FIELDS)
        if unknown:
            raise ValueError(f"Unknown task fields: {sorted(unknown)}")
        async with _session(self._factory, "update task") as dbs:
            task = await _owned_task(dbs, task_id, user_id)
            for name, value in fields.items():
                if value is None:
                    continue
                setattr(task, name, value.value if isinstance(value, TaskState) else value)
            await _commit_refresh(dbs, task)
            logger.info("Updated task %s", task.id)
            return task

    async def delete(self, task_id: int, user_id: str) -> Task:
        async with _session(self._factory, "delete task") as dbs:
            task = await _owned_task(dbs, task_id, user_id)
            await dbs.delete(task)
            await dbs.commit()
            logger.info("Deleted task %s", task_id)
            return task

    async def delete_with_history(self, task_id: int, user_id: str) -> Tuple[Task, int]:
        """Delete a task and its execution log entries in one transaction."""
        async with _session(self._factory, "delete task with history") as dbs:
            task = await _owned_task(dbs, task_id, user_id)
            result = await dbs.execute(
                delete(ExecutionLog)
                .where(ExecutionLog.task_id == task_id)
                .where(ExecutionLog.user_id == user_id)
            )
            await dbs.delete(task)
            await dbs.commit()
            removed = int(result.rowcount or 0)
            logger.info("Deleted task %s with %d log entr(ies)", task_id, removed)
            return task, removed

    async def list_by_user(self, user_id: str) -> List[Task]:
        async with _session(self._factory, "list tasks") as dbs:
            result = await dbs.execute(
                select(Task).where(Task.user_id == user_id).order_by(Task.next_execution, Task.id)
            )
            tasks = list(result.scalars())
            logger.info("Fetched %d tasks for user %s", len(tasks), user_id)
            return tasks

    async def list_scheduled(self) -> List[Task]:
        async with _session(self._factory, "list scheduled tasks") as dbs:
            result = await dbs.execute(
                select(Task).where(Task.state == TaskState.scheduled.value).order_by(Task.next_execution)
            )
            return list(result.scalars())

    async def claim_for_fire(self, task_id: int, expected_instant: datetime) -> Optional[Task]:
        """
        Move a scheduled task to fired if it is still due at expected_instant.

        Returns None when the task is gone, no longer scheduled, or was
        rescheduled after the trigger was armed.
        """
        async with _session(self._factory, "claim task") as dbs:
            task = await dbs.get(Task, task_id)
            if task is None or task.state != TaskState.scheduled.value:
                return None
            if as_utc(task.next_execution) != as_utc(expected_instant):
                return None
            task.state = TaskState.fired.value
            await _commit_refresh(dbs, task)
            return task


# --- Execution Log Operations ------------------------------------------------

class ExecutionLogStore:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._factory = session_factory

    async def append(
        self,
        *,
        task_id: Optional[int],
        task_name: str,
        user_id: str,
        status: LogStatus,
        message: str,
        execution_time: Optional[datetime] = None,
    ) -> ExecutionLog:
        async with _session(self._factory, "append execution log") as dbs:
            entry = ExecutionLog(
                task_id=task_id,
                task_name=task_name,
                user_id=user_id,
                status=status.value,
                message=message,
                execution_time=execution_time or datetime.now(timezone.utc),
            )
            dbs.add(entry)
            await _commit_refresh(dbs, entry)
            logger.debug("Logged %s for task %s (%s)", entry.status, task_id, task_name)
            return entry

    async def list_by_user(self, user_id: str) -> List[ExecutionLog]:
        async with _session(self._factory, "list execution logs") as dbs:
            result = await dbs.execute(
                select(ExecutionLog)
                .where(ExecutionLog.user_id == user_id)
                .order_by(desc(ExecutionLog.execution_time), desc(ExecutionLog.id))
            )
            return list(result.scalars())

    async def delete_by_task(self, task_id: int, user_id: str) -> int:
        async with _session(self._factory, "delete execution logs") as dbs:
            result = await dbs.execute(
                delete(ExecutionLog)
                .where(ExecutionLog.task_id == task_id)
                .where(ExecutionLog.user_id == user_id)
            )
            await dbs.commit()
            logger.info("Deleted %d log entr(ies) for task %s", result.rowcount, task_id)
            return int(result.rowcount or 0)

    async def delete_by_task_name_and_user(self, task_name: str, user_id: str) -> int:
        """Name-keyed cleanup; also removes entries of other tasks sharing the name."""
        async with _session(self._factory, "delete execution logs by name") as dbs:
            result = await dbs.execute(
                delete(ExecutionLog)
                .where(ExecutionLog.task_name == task_name)
                .where(ExecutionLog.user_id == user_id)
            )
            await dbs.commit()
            logger.info("Deleted %d log entr(ies) named %r for user %s", result.rowcount, task_name, user_id)
            return int(result.rowcount or 0)


# --- User Operations ---------------------------------------------------------

class UserDirectory:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._factory = session_factory

    async def get_by_id(self, user_id: str) -> User:
        async with _session(self._factory, "get user") as dbs:
            result = await dbs.execute(select(User).where(User.user_id == user_id))
            user = result.scalar_one_or_none()
            if user is None:
                raise NotFoundError("User not found")
            return user

    async def upsert(self, user_id: str, email: str, name: Optional[str] = None) -> User:
        """Create or update a user record."""
        async with _session(self._factory, "upsert user") as dbs:
            result = await dbs.execute(select(User).where(User.user_id == user_id))
            user = result.scalar_one_or_none()

            if user:
                user.email = email
                if name is not None:
                    user.name = name
                await _commit_refresh(dbs, user)
                logger.info("Updated user %s", user_id)
            else:
                user = User(user_id=user_id, email=email, name=name)
                dbs.add(user)
                await _commit_refresh(dbs, user)
                logger.info("Created user %s", user_id)

            return user
