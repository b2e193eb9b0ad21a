"""
Priority-weighted polling scheduler.

Owns a registry of named periodic fetch tasks, computes each task's next
delay from its interval, retry history and priority, executes fetches,
retries with exponential backoff, and disables tasks that exhaust their
retries.

Scheduling:
    - One min-heap of (fire_time, seq, task_id) on a monotonic clock
    - A single driver loop sleeps until the earliest entry is due
    - Cancelling a timer drops the task's live seq; stale heap entries are
      discarded when they surface
    - Each due task runs in its own asyncio task, so a slow fetch never
      delays another task's timer

Delay:
    delay_ms = min(interval_ms * backoff_multiplier ** retry_count, 300000)
               * priority_factor

    priority_factor: critical 0.5, high 0.75, medium 1.0, low 1.5

Failure handling:
    Fetch errors, hook errors and listener errors are caught, logged and
    reported through hooks, lifecycle events and ExecutionResult. Nothing
    raised by a task escapes the scheduler.

Example:
    >>> scheduler = TaskScheduler(liveness=signal)
    >>> scheduler.add_task(ScheduledTask(
    ...     id="dashboard-system-metrics",
    ...     name="System Metrics",
    ...     fetch=fetch_system_metrics,
    ...     config=TaskConfig(interval_ms=15000, priority=TaskPriority.CRITICAL),
    ... ))
    >>> scheduler.start()
"""

import asyncio
import heapq
import inspect
import itertools
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import structlog

from dashsync.config.models import TaskConfig
from dashsync.errors import ExhaustedRetriesError, TaskNotFoundError, TransientFetchFailure
from dashsync.interfaces.liveness import LivenessSource
from dashsync.models.tasks import (
    ExecutionResult,
    ExecutionStatus,
    ScheduledTask,
    TaskEvent,
    TaskEventType,
    TaskStatus,
)

logger = structlog.get_logger(__name__)

# Cap on the backoff-inflated delay, applied before the priority factor
MAX_DELAY_MS = 300000

TaskListener = Callable[[TaskEvent], Any]


def compute_delay(
    config: TaskConfig,
    retry_count: int,
    max_delay_ms: float = MAX_DELAY_MS,
) -> float:
    """
    Compute the delay before a task's next execution.

    Args:
        config: Task polling settings.
        retry_count: Consecutive failures so far.
        max_delay_ms: Cap applied to the backoff-inflated interval.

    Returns:
        float: Delay in milliseconds.

    Example:
        >>> cfg = TaskConfig(interval_ms=30000, backoff_multiplier=2, priority="high")
        >>> [compute_delay(cfg, n) for n in (1, 2, 3)]
        [45000.0, 90000.0, 180000.0]
    """
    inflated = config.interval_ms * (config.backoff_multiplier ** retry_count)
    return min(inflated, max_delay_ms) * config.priority.factor


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskScheduler:
    """
    Registry and driver for periodic fetch tasks.

    One instance is owned by the application root and shared by every
    consumer. All mutation of the registry goes through the public methods;
    ``get_task_status`` and ``get_all_tasks`` return frozen copies.

    Attributes:
        max_delay_ms: Cap on the backoff-inflated delay.

    Invariants:
        - A task never runs re-entrantly (``is_running`` guard).
        - ``retry_count`` is 0 right after a successful execution.
        - A task whose ``retry_count`` reaches ``max_retries`` is disabled
          and never scheduled again until reconfigured or re-added.
        - ``pause_all`` and ``stop`` clear timers without touching retry or
          enabled state.
    """

    def __init__(
        self,
        liveness: Optional[LivenessSource] = None,
        clock: Callable[[], float] = time.monotonic,
        max_delay_ms: float = MAX_DELAY_MS,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            liveness: Optional visibility source. Hidden pauses every task,
                visible resumes them.
            clock: Monotonic clock in seconds used for fire times.
            max_delay_ms: Cap on the backoff-inflated delay.
        """
        self.max_delay_ms = max_delay_ms
        self._clock = clock

        self._tasks: Dict[str, ScheduledTask] = {}
        self._heap: List[Tuple[float, int, str]] = []
        self._timers: Dict[str, int] = {}
        self._seq = itertools.count()

        self._active = False
        self._paused = False
        self._driver: Optional[asyncio.Task] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._executions: Set[asyncio.Task] = set()

        self._listeners: Dict[int, TaskListener] = {}
        self._listener_tokens = itertools.count()

        self._liveness = liveness
        self._liveness_unsubscribe: Optional[Callable[[], None]] = None
        if liveness is not None:
            self._liveness_unsubscribe = liveness.subscribe(self._on_liveness_change)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        """True between start() and stop()."""
        return self._active

    @property
    def is_paused(self) -> bool:
        """True between pause_all() and resume_all()."""
        return self._paused

    @property
    def pending_count(self) -> int:
        """Number of tasks with a pending timer."""
        return len(self._timers)

    def compute_delay(self, task: ScheduledTask) -> float:
        """Delay in milliseconds before ``task`` would next run."""
        return compute_delay(task.config, task.retry_count, self.max_delay_ms)

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    def add_task(self, task: ScheduledTask) -> None:
        """
        Register a task, replacing any task with the same id.

        Runtime state (retry count, running flag, run times) is reset. The
        task is scheduled immediately if the scheduler is active.

        Args:
            task: Task to register.
        """
        if task.id in self._tasks:
            self._cancel_timer(task.id)
            logger.warning("task_replaced", task_id=task.id)

        task.retry_count = 0
        task.is_running = False
        task.next_run = None
        task.last_delay_ms = None
        self._tasks[task.id] = task

        logger.info(
            "task_added",
            task_id=task.id,
            name=task.name,
            interval_ms=task.config.interval_ms,
            priority=task.config.priority.value,
        )

        self._schedule(task.id)

    def remove_task(self, task_id: str) -> bool:
        """
        Unregister a task and cancel its timer.

        An execution already in flight finishes but is not rescheduled.

        Returns:
            bool: True if the task was registered.
        """
        self._cancel_timer(task_id)
        task = self._tasks.pop(task_id, None)
        if task is None:
            return False

        logger.info("task_removed", task_id=task_id)
        return True

    def update_task_config(self, task_id: str, **changes: Any) -> TaskStatus:
        """
        Merge configuration changes into a task and reschedule it.

        This is the external reconfiguration path: retry history is reset,
        so passing ``enabled=True`` revives a task disabled after exhausting
        its retries.

        Args:
            task_id: Task to update.
            **changes: TaskConfig fields to change (interval_ms, max_retries,
                backoff_multiplier, enabled, priority).

        Returns:
            TaskStatus: The task's state after the update.

        Raises:
            TaskNotFoundError: If no task has this id.
            pydantic.ValidationError: If the merged configuration is invalid.
        """
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        task.config = TaskConfig.model_validate({**task.config.model_dump(), **changes})
        task.retry_count = 0
        self._cancel_timer(task_id)

        logger.info(
            "task_config_updated",
            task_id=task_id,
            changes={k: str(v) for k, v in changes.items()},
        )

        self._schedule(task_id)
        return task.status()

    def get_task_status(self, task_id: str) -> Optional[TaskStatus]:
        """Frozen copy of one task's state, or None if unknown."""
        task = self._tasks.get(task_id)
        return task.status() if task is not None else None

    def get_all_tasks(self) -> List[TaskStatus]:
        """Frozen copies of every registered task, in registration order."""
        return [task.status() for task in self._tasks.values()]

    def has_task(self, task_id: str) -> bool:
        return task_id in self._tasks

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """
        Start the driver loop and schedule every enabled task.

        Must be called from a running event loop. Idempotent.
        """
        if self._active:
            return

        self._wakeup = asyncio.Event()
        self._active = True
        # A manual pause_all() does not survive a restart; only a hidden host does
        self._paused = self._liveness is not None and not self._liveness.is_visible

        self._driver = asyncio.create_task(self._drive())

        for task_id in list(self._tasks):
            self._schedule(task_id)

        logger.info(
            "scheduler_started",
            tasks_count=len(self._tasks),
            paused=self._paused,
        )

    def stop(self) -> None:
        """
        Cancel every timer and the driver loop.

        The registry is preserved; a later start() resumes enabled tasks.
        Executions in flight complete but are not rescheduled.
        """
        if not self._active:
            return

        self._active = False
        self._clear_timers()

        if self._driver is not None:
            self._driver.cancel()
            self._driver = None

        logger.info("scheduler_stopped", tasks_count=len(self._tasks))

    async def close(self) -> None:
        """
        Stop the scheduler, cancel executions in flight and clear the registry.

        Also detaches from the liveness source. The instance should not be
        reused afterwards.
        """
        self.stop()

        if self._liveness_unsubscribe is not None:
            self._liveness_unsubscribe()
            self._liveness_unsubscribe = None

        executions = list(self._executions)
        for execution in executions:
            execution.cancel()
        if executions:
            await asyncio.gather(*executions, return_exceptions=True)

        self._tasks.clear()
        self._listeners.clear()
        logger.info("scheduler_closed")

    def pause_all(self) -> None:
        """
        Clear every pending timer without touching task state.

        Executions that complete while paused are not rescheduled.
        """
        self._paused = True
        cleared = len(self._timers)
        self._clear_timers()
        logger.info("scheduler_paused", cleared_timers=cleared)

    def resume_all(self) -> None:
        """
        Reschedule every enabled, idle task from now at its computed delay.

        Has no timer effect while the scheduler is stopped.
        """
        self._paused = False
        if not self._active:
            return

        resumed = 0
        for task_id, task in self._tasks.items():
            if task.enabled and not task.is_running:
                self._schedule(task_id)
                resumed += 1

        logger.info("scheduler_resumed", resumed_tasks=resumed)

    def pause_task(self, task_id: str) -> bool:
        """
        Cancel one task's pending timer.

        Returns:
            bool: True if a timer was pending.
        """
        had_timer = task_id in self._timers
        self._cancel_timer(task_id)
        if had_timer:
            logger.debug("task_paused", task_id=task_id)
        return had_timer

    def resume_task(self, task_id: str) -> bool:
        """
        Reschedule one task if it is enabled and the scheduler is running.

        Returns:
            bool: True if a timer was set.
        """
        return self._schedule(task_id)

    async def run_task_now(self, task_id: str) -> ExecutionResult:
        """
        Execute a task immediately and return the outcome.

        Runs even if the task is disabled or paused. A pending timer is
        superseded by the reschedule that follows the execution.

        Args:
            task_id: Task to run.

        Returns:
            ExecutionResult: SKIPPED if the task is already running.

        Raises:
            TaskNotFoundError: If no task has this id.
        """
        if task_id not in self._tasks:
            raise TaskNotFoundError(task_id)
        return await self._execute(task_id)

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def add_listener(self, listener: TaskListener) -> Callable[[], None]:
        """
        Subscribe to task lifecycle events.

        Args:
            listener: Called with every TaskEvent. Errors are logged.

        Returns:
            Callable[[], None]: Removes the listener.
        """
        token = next(self._listener_tokens)
        self._listeners[token] = listener

        def remove() -> None:
            self._listeners.pop(token, None)

        return remove

    def _emit(self, event: TaskEvent) -> None:
        for listener in list(self._listeners.values()):
            try:
                listener(event)
            except Exception as e:
                logger.error(
                    "task_listener_failed",
                    task_id=event.task_id,
                    event_type=event.type.value,
                    error=str(e),
                )

    # -------------------------------------------------------------------------
    # Timers
    # -------------------------------------------------------------------------

    def _schedule(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if task is None or not task.enabled or not self._active or self._paused:
            return False

        delay_ms = self.compute_delay(task)
        task.last_delay_ms = delay_ms
        task.next_run = _utcnow() + timedelta(milliseconds=delay_ms)

        seq = next(self._seq)
        self._timers[task_id] = seq
        heapq.heappush(self._heap, (self._clock() + delay_ms / 1000.0, seq, task_id))
        self._wake()

        logger.debug(
            "task_scheduled",
            task_id=task_id,
            delay_ms=delay_ms,
            retry_count=task.retry_count,
        )
        return True

    def _cancel_timer(self, task_id: str) -> None:
        self._timers.pop(task_id, None)
        task = self._tasks.get(task_id)
        if task is not None:
            task.next_run = None

    def _clear_timers(self) -> None:
        self._timers.clear()
        self._heap.clear()
        for task in self._tasks.values():
            task.next_run = None
        self._wake()

    def _wake(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    def _is_live(self, entry: Tuple[float, int, str]) -> bool:
        _, seq, task_id = entry
        return self._timers.get(task_id) == seq

    async def _drive(self) -> None:
        """Fire due timers, then sleep until the next one or a wakeup."""
        assert self._wakeup is not None
        while self._active:
            self._wakeup.clear()
            now = self._clock()

            while self._heap and self._heap[0][0] <= now:
                entry = heapq.heappop(self._heap)
                if not self._is_live(entry):
                    continue
                task_id = entry[2]
                del self._timers[task_id]
                self._spawn(task_id)

            while self._heap and not self._is_live(self._heap[0]):
                heapq.heappop(self._heap)

            timeout = max(self._heap[0][0] - now, 0.0) if self._heap else None
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

    def _spawn(self, task_id: str) -> None:
        execution = asyncio.create_task(self._execute(task_id))
        self._executions.add(execution)
        execution.add_done_callback(self._executions.discard)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _execute(self, task_id: str) -> ExecutionResult:
        task = self._tasks.get(task_id)
        if task is None or task.is_running:
            logger.debug("task_execution_skipped", task_id=task_id)
            return ExecutionResult(
                task_id=task_id,
                status=ExecutionStatus.SKIPPED,
                retry_count=task.retry_count if task is not None else 0,
            )

        task.is_running = True
        task.last_run = _utcnow()
        self._emit(TaskEvent(type=TaskEventType.STARTED, task_id=task_id, retry_count=task.retry_count))
        started = time.perf_counter()

        try:
            value = await task.fetch()
        except asyncio.CancelledError:
            task.is_running = False
            raise
        except Exception as e:
            duration_ms = (time.perf_counter() - started) * 1000
            result = await self._handle_failure(task, e, duration_ms)
        else:
            duration_ms = (time.perf_counter() - started) * 1000
            result = await self._handle_success(task, value, duration_ms)
        finally:
            task.is_running = False

        # Replaced or removed while in flight: the registry no longer owns it
        if not result.disabled and self._tasks.get(task_id) is task:
            self._schedule(task_id)

        return result

    async def _handle_success(
        self, task: ScheduledTask, value: Any, duration_ms: float
    ) -> ExecutionResult:
        task.retry_count = 0

        logger.debug(
            "task_executed",
            task_id=task.id,
            duration_ms=round(duration_ms, 2),
        )

        await self._call_hook(task, task.on_success, value, "on_success")
        self._emit(TaskEvent(type=TaskEventType.SUCCEEDED, task_id=task.id, value=value))

        return ExecutionResult(
            task_id=task.id,
            status=ExecutionStatus.SUCCEEDED,
            value=value,
            duration_ms=duration_ms,
        )

    async def _handle_failure(
        self, task: ScheduledTask, error: Exception, duration_ms: float
    ) -> ExecutionResult:
        task.retry_count += 1
        failure = TransientFetchFailure(task.id, task.retry_count, error)

        logger.warning(
            "task_failed",
            task_id=task.id,
            error=str(error),
            error_type=type(error).__name__,
            retry_count=task.retry_count,
            max_retries=task.config.max_retries,
        )

        await self._call_hook(task, task.on_error, failure, "on_error")

        disabled = task.retry_count >= task.config.max_retries
        if disabled:
            task.config = task.config.model_copy(update={"enabled": False})
            task.next_run = None
            if self._tasks.get(task.id) is task:
                # A timer set before a run_task_now call would otherwise still fire
                self._cancel_timer(task.id)
            exhausted = ExhaustedRetriesError(task.id, task.config.max_retries)
            logger.error(
                "task_disabled",
                task_id=task.id,
                max_retries=task.config.max_retries,
            )

        self._emit(
            TaskEvent(
                type=TaskEventType.FAILED,
                task_id=task.id,
                retry_count=task.retry_count,
                error=str(failure),
                next_delay_ms=None if disabled else self.compute_delay(task),
            )
        )
        if disabled:
            self._emit(
                TaskEvent(
                    type=TaskEventType.DISABLED,
                    task_id=task.id,
                    retry_count=task.retry_count,
                    error=str(exhausted),
                )
            )

        return ExecutionResult(
            task_id=task.id,
            status=ExecutionStatus.FAILED,
            error=str(error),
            retry_count=task.retry_count,
            disabled=disabled,
            duration_ms=duration_ms,
        )

    async def _call_hook(
        self,
        task: ScheduledTask,
        hook: Optional[Callable[[Any], Any]],
        argument: Any,
        hook_name: str,
    ) -> None:
        if hook is None:
            return
        try:
            outcome = hook(argument)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(
                "task_hook_failed",
                task_id=task.id,
                hook=hook_name,
                error=str(e),
                error_type=type(e).__name__,
            )

    # -------------------------------------------------------------------------
    # Liveness
    # -------------------------------------------------------------------------

    def _on_liveness_change(self, visible: bool) -> None:
        if visible:
            self.resume_all()
        else:
            self.pause_all()

    def __repr__(self) -> str:
        """Return string representation."""
        return (
            f"TaskScheduler(tasks={len(self._tasks)}, "
            f"active={self._active}, "
            f"paused={self._paused}, "
            f"pending={len(self._timers)})"
        )
