from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from taskmail.clock import as_utc
from taskmail.models import LogStatus, TaskState

DateInput = Union[datetime, float, str]


# ---------------------------------------------------------------------------
# Task Schemas
# ---------------------------------------------------------------------------
class TaskCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    task_name: str = Field(..., alias="taskName", min_length=1, description="Display name of the task")
    execution_date: DateInput = Field(
        ..., alias="executionDate", description="Target time: ISO-8601, epoch seconds or natural language"
    )
    timezone: Optional[str] = Field(
        None, description="IANA timezone used for naive target times; defaults to the service default"
    )


class TaskUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    task_name: Optional[str] = Field(None, alias="taskName", description="New display name")
    execution_date: Optional[DateInput] = Field(None, alias="executionDate", description="New target time")
    timezone: Optional[str] = Field(None, description="New IANA timezone for the task")


class TaskOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: int = Field(..., description="Unique identifier for the task")
    task_name: str = Field(..., alias="taskName", description="Display name of the task")
    user_id: str = Field(..., alias="userId", description="Owner of the task")
    next_execution: datetime = Field(..., alias="nextExecution", description="Target instant in UTC")
    timezone: str = Field(..., description="Timezone the target was entered in")
    state: TaskState = Field(..., description="Lifecycle state")
    created_at: datetime = Field(..., alias="createdAt", description="Creation timestamp")

    @field_validator("next_execution", "created_at")
    @classmethod
    def ensure_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class TaskResponse(BaseModel):
    success: bool = Field(..., description="Whether the operation succeeded")
    message: str = Field(..., description="Human-readable outcome")
    task: Optional[TaskOut] = Field(None, description="The affected task")


# ---------------------------------------------------------------------------
# Execution Log Schemas
# ---------------------------------------------------------------------------
class ExecutionLogOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: int = Field(..., description="Unique identifier for the log entry")
    task_id: Optional[int] = Field(None, alias="taskId", description="Task this entry belongs to")
    task_name: str = Field(..., alias="taskName", description="Task name at execution time")
    user_id: str = Field(..., alias="userId", description="Owner of the task")
    execution_time: datetime = Field(..., alias="executionTime", description="When the attempt ran")
    status: LogStatus = Field(..., description="Success, Failure or Updated")
    message: str = Field(..., description="Outcome detail")

    @field_validator("execution_time")
    @classmethod
    def ensure_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class ErrorResponse(BaseModel):
    success: bool = Field(False, description="Always false for errors")
    message: str = Field(..., description="Error description")
