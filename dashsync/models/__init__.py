"""
Shared data models for the sync engine.

Modules:
    tasks: Scheduled tasks, execution results and task lifecycle events
    channel: Push channel state, wire envelope and channel lifecycle events
    snapshot: Metric snapshot read model and polling status

Example:
    >>> from dashsync.models import ScheduledTask, ChannelMessage, SyncSnapshot
"""

# Task models
from dashsync.models.tasks import (
    ExecutionResult,
    ExecutionStatus,
    Fetcher,
    ScheduledTask,
    TaskEvent,
    TaskEventType,
    TaskStatus,
)

# Channel models
from dashsync.models.channel import (
    ChannelEvent,
    ChannelEventType,
    ChannelMessage,
    ChannelState,
)

# Snapshot models
from dashsync.models.snapshot import (
    CoordinatorStatus,
    MetricSlot,
    PollingStatus,
    SyncSnapshot,
)

__all__ = [
    # Tasks
    "Fetcher",
    "ScheduledTask",
    "TaskStatus",
    "ExecutionStatus",
    "ExecutionResult",
    "TaskEventType",
    "TaskEvent",
    # Channel
    "ChannelState",
    "ChannelMessage",
    "ChannelEventType",
    "ChannelEvent",
    # Snapshot
    "MetricSlot",
    "SyncSnapshot",
    "PollingStatus",
    "CoordinatorStatus",
]
