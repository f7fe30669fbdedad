import logging
from typing import List

from fastapi import APIRouter, Depends, Request

from taskmail import schemas
from taskmail.auth import get_current_user_id
from taskmail.clock import as_utc
from taskmail.services import task_service
from taskmail.services.task_service import TaskServices

logger = logging.getLogger("taskmail.routes")
router = APIRouter(tags=["Tasks"])

_ERRORS = {
    400: {"model": schemas.ErrorResponse},
    401: {"model": schemas.ErrorResponse},
    404: {"model": schemas.ErrorResponse},
}


def get_services(request: Request) -> TaskServices:
    return request.app.state.services


def _task_response(message: str, task) -> schemas.TaskResponse:
    return schemas.TaskResponse(success=True, message=message, task=schemas.TaskOut.model_validate(task))


@router.post("/add-task", response_model=schemas.TaskResponse, responses=_ERRORS)
async def add_task(
    payload: schemas.TaskCreate,
    user_id: str = Depends(get_current_user_id),
    svc: TaskServices = Depends(get_services),
):
    task = await task_service.add_task(svc, user_id, payload)
    return _task_response(
        f'Task "{task.task_name}" scheduled for {as_utc(task.next_execution).isoformat()}', task
    )


@router.get("/tasks", response_model=List[schemas.TaskOut], responses=_ERRORS)
async def get_tasks(
    user_id: str = Depends(get_current_user_id),
    svc: TaskServices = Depends(get_services),
):
    return await task_service.list_tasks(svc, user_id)


@router.put("/tasks/{task_id}", response_model=schemas.TaskResponse, responses=_ERRORS)
async def update_task(
    task_id: int,
    payload: schemas.TaskUpdate,
    user_id: str = Depends(get_current_user_id),
    svc: TaskServices = Depends(get_services),
):
    task = await task_service.update_task(svc, user_id, task_id, payload)
    return _task_response(f'Task "{task.task_name}" updated', task)


@router.post("/tasks/{task_id}/cancel", response_model=schemas.TaskResponse, responses=_ERRORS)
async def cancel_task(
    task_id: int,
    user_id: str = Depends(get_current_user_id),
    svc: TaskServices = Depends(get_services),
):
    task = await task_service.cancel_task(svc, user_id, task_id)
    return _task_response(f'Task "{task.task_name}" canceled', task)


@router.delete("/tasks/{task_id}", response_model=schemas.TaskResponse, responses=_ERRORS)
async def delete_task(
    task_id: int,
    user_id: str = Depends(get_current_user_id),
    svc: TaskServices = Depends(get_services),
):
    task = await task_service.delete_task(svc, user_id, task_id)
    return _task_response(f'Task "{task.task_name}" deleted', task)


@router.get("/history", response_model=List[schemas.ExecutionLogOut], responses=_ERRORS)
async def get_history(
    user_id: str = Depends(get_current_user_id),
    svc: TaskServices = Depends(get_services),
):
    return await task_service.list_history(svc, user_id)
