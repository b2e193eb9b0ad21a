"""
Polling scheduler.

Exports the TaskScheduler service and the pure delay function it uses.

Example:
    >>> from dashsync.scheduler import TaskScheduler, compute_delay
"""

from dashsync.scheduler.task_scheduler import MAX_DELAY_MS, TaskScheduler, compute_delay

__all__: list[str] = [
    "MAX_DELAY_MS",
    "TaskScheduler",
    "compute_delay",
]
