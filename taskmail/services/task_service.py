import logging
from dataclasses import dataclass
from typing import List

from taskmail.crud import ExecutionLogStore, TaskStore
from taskmail.features.reminders import TaskScheduler
from taskmail.models import ExecutionLog, Task
from taskmail.schemas import TaskCreate, TaskUpdate

logger = logging.getLogger("taskmail.services.task")


@dataclass
class TaskServices:
    """Everything the request handlers need, built once at startup."""

    tasks: TaskStore
    logs: ExecutionLogStore
    scheduler: TaskScheduler
    default_timezone: str = "UTC"


async def add_task(svc: TaskServices, user_id: str, payload: TaskCreate) -> Task:
    return await svc.scheduler.add_task(
        user_id,
        payload.task_name,
        payload.execution_date,
        payload.timezone or svc.default_timezone,
    )


async def list_tasks(svc: TaskServices, user_id: str) -> List[Task]:
    return await svc.tasks.list_by_user(user_id)


async def update_task(svc: TaskServices, user_id: str, task_id: int, payload: TaskUpdate) -> Task:
    return await svc.scheduler.update_task(
        user_id,
        task_id,
        task_name=payload.task_name,
        target=payload.execution_date,
        tz_name=payload.timezone,
    )


async def cancel_task(svc: TaskServices, user_id: str, task_id: int) -> Task:
    return await svc.scheduler.cancel_task(user_id, task_id)


async def delete_task(svc: TaskServices, user_id: str, task_id: int) -> Task:
    return await svc.scheduler.delete_task(user_id, task_id)


async def list_history(svc: TaskServices, user_id: str) -> List[ExecutionLog]:
    return await svc.logs.list_by_user(user_id)
