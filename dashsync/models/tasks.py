"""
Scheduled task models.

This module defines the registry entry for a polling task and the
read-only views and lifecycle records the scheduler hands out.

Models:
    ScheduledTask: Mutable registry entry owned by the TaskScheduler
    TaskStatus: Frozen copy of a task's state for consumers
    ExecutionResult: Outcome of one task execution
    TaskEvent: Lifecycle record emitted to scheduler listeners
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from dashsync.config.models import TaskConfig, TaskPriority
from dashsync.errors import TransientFetchFailure

Fetcher = Callable[[], Awaitable[Any]]
SuccessHook = Callable[[Any], Any]
ErrorHook = Callable[[TransientFetchFailure], Any]


@dataclass
class ScheduledTask:
    """
    A named, independently scheduled periodic fetch.

    Runtime fields (``retry_count`` onwards) belong to the scheduler and are
    reset when the task is added. Mutate a registered task only through
    TaskScheduler operations.

    Example:
        >>> task = ScheduledTask(
        ...     id="dashboard-quick-stats",
        ...     name="Quick Stats",
        ...     fetch=client.get_quick_stats,
        ...     config=TaskConfig(interval_ms=30000, priority=TaskPriority.HIGH),
        ... )
    """

    id: str
    name: str
    fetch: Fetcher
    config: TaskConfig = field(default_factory=TaskConfig)
    on_success: Optional[SuccessHook] = None
    on_error: Optional[ErrorHook] = None

    retry_count: int = 0
    is_running: bool = False
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    last_delay_ms: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Task id must be a non-empty string")

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def priority(self) -> TaskPriority:
        return self.config.priority

    def status(self) -> "TaskStatus":
        """Return a frozen copy of this task's current state."""
        return TaskStatus(
            id=self.id,
            name=self.name,
            interval_ms=self.config.interval_ms,
            max_retries=self.config.max_retries,
            backoff_multiplier=self.config.backoff_multiplier,
            priority=self.config.priority,
            enabled=self.config.enabled,
            retry_count=self.retry_count,
            is_running=self.is_running,
            last_run=self.last_run,
            next_run=self.next_run,
            last_delay_ms=self.last_delay_ms,
        )


class TaskStatus(BaseModel):
    """Read-only snapshot of a scheduled task."""

    model_config = {"frozen": True, "extra": "forbid"}

    id: str = Field(..., description="Task id", min_length=1)
    name: str = Field(..., description="Human-readable task name")
    interval_ms: int = Field(..., description="Base delay between executions", gt=0)
    max_retries: int = Field(..., description="Failures before disabling", ge=0)
    backoff_multiplier: float = Field(..., description="Backoff growth factor", ge=1.0)
    priority: TaskPriority = Field(..., description="Scheduling priority")
    enabled: bool = Field(..., description="Whether the task is scheduled")
    retry_count: int = Field(..., description="Consecutive failures", ge=0)
    is_running: bool = Field(..., description="Execution in flight")
    last_run: Optional[datetime] = Field(
        default=None, description="Start of the last execution (UTC)"
    )
    next_run: Optional[datetime] = Field(
        default=None, description="Next planned execution (UTC)"
    )
    last_delay_ms: Optional[float] = Field(
        default=None, description="Most recently computed delay"
    )


class ExecutionStatus(str, Enum):
    """Outcome of one task execution."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionResult(BaseModel):
    """
    Outcome of one task execution.

    Attributes:
        task_id: Task that ran.
        status: SUCCEEDED, FAILED or SKIPPED (already running).
        value: Fetched value on success.
        error: Error text on failure.
        retry_count: Task retry count after the execution.
        disabled: True if this failure exhausted the task's retries.
        duration_ms: Wall time spent awaiting the fetch.
    """

    model_config = {"frozen": True}

    task_id: str
    status: ExecutionStatus
    value: Any = None
    error: Optional[str] = None
    retry_count: int = 0
    disabled: bool = False
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == ExecutionStatus.SUCCEEDED


class TaskEventType(str, Enum):
    """Task lifecycle event kinds."""

    STARTED = "started"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DISABLED = "disabled"


class TaskEvent(BaseModel):
    """Lifecycle record emitted by the scheduler."""

    model_config = {"frozen": True}

    type: TaskEventType
    task_id: str
    retry_count: int = 0
    error: Optional[str] = None
    next_delay_ms: Optional[float] = None
    value: Any = None
