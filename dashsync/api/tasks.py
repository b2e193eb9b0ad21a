"""
Task API endpoints.

Provides:
    GET   /api/tasks                  - Every scheduled task
    GET   /api/tasks/{task_id}        - One task
    PATCH /api/tasks/{task_id}        - Change a task's polling settings
    POST  /api/tasks/{task_id}/run    - Execute a task immediately

A task disabled after exhausting its retries stays disabled until it is
reconfigured, e.g. ``PATCH /api/tasks/dashboard-quick-stats {"enabled": true}``.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, ValidationError

import structlog

from dashsync.api.app import AppState, get_app_state
from dashsync.config.models import TaskPriority
from dashsync.errors import TaskNotFoundError
from dashsync.models.tasks import ExecutionResult, TaskStatus

logger = structlog.get_logger(__name__)

router = APIRouter()


class TaskConfigUpdate(BaseModel):
    """Partial task configuration. Omitted fields are unchanged."""

    model_config = {
        "extra": "forbid",
        "json_schema_extra": {"example": {"enabled": True, "interval_ms": 30000}},
    }

    interval_ms: Optional[int] = Field(default=None, gt=0)
    max_retries: Optional[int] = Field(default=None, ge=0)
    backoff_multiplier: Optional[float] = Field(default=None, ge=1.0)
    enabled: Optional[bool] = None
    priority: Optional[TaskPriority] = None


@router.get(
    "/tasks",
    response_model=List[TaskStatus],
    summary="List scheduled tasks",
)
async def list_tasks(state: AppState = Depends(get_app_state)) -> List[TaskStatus]:
    return state.agent.scheduler.get_all_tasks()


@router.get(
    "/tasks/{task_id}",
    response_model=TaskStatus,
    summary="Get one scheduled task",
)
async def get_task(task_id: str, state: AppState = Depends(get_app_state)) -> TaskStatus:
    status = state.agent.scheduler.get_task_status(task_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
    return status


@router.patch(
    "/tasks/{task_id}",
    response_model=TaskStatus,
    summary="Reconfigure a scheduled task",
    description="Merges the given settings, resets retry state and reschedules the task.",
)
async def update_task(
    task_id: str,
    update: TaskConfigUpdate,
    state: AppState = Depends(get_app_state),
) -> TaskStatus:
    """
    Update a task's polling settings.

    Raises:
        HTTPException: 404 if the task is unknown, 422 if the merged
            configuration is invalid.
    """
    changes = update.model_dump(exclude_none=True)
    try:
        return state.agent.scheduler.update_task_config(task_id, **changes)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False))


@router.post(
    "/tasks/{task_id}/run",
    response_model=ExecutionResult,
    summary="Run a task now",
)
async def run_task(task_id: str, state: AppState = Depends(get_app_state)) -> ExecutionResult:
    """
    Execute a task immediately, even if disabled.

    Returns:
        ExecutionResult: Outcome of the execution; ``skipped`` if a run
        was already in flight.
    """
    try:
        result = await state.agent.scheduler.run_task_now(task_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    logger.info("api_task_run", task_id=task_id, status=result.status.value)
    return result
