"""
Metric snapshot models.

The snapshot is the read model the coordinator exposes to presentation
layers. Both models are frozen; the coordinator replaces them on every
write so readers always hold a consistent copy.

Models:
    MetricSlot: One metric's last good value and freshness
    SyncSnapshot: All metric slots plus refresh state
    PollingStatus: Polling activity summary for the dashboard
    CoordinatorStatus: Combined status view
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from dashsync.models.tasks import TaskStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MetricSlot(BaseModel):
    """
    One metric in the snapshot.

    A failed fetch sets ``error`` and leaves ``value`` and ``last_updated``
    untouched, so a metric shows its last good value while flagged
    unavailable.
    """

    model_config = {"frozen": True}

    value: Any = Field(default=None, description="Last successfully fetched value")
    last_updated: Optional[datetime] = Field(
        default=None, description="When value was last written (UTC)"
    )
    error: Optional[str] = Field(
        default=None, description="Error text from the latest failed fetch"
    )

    @property
    def is_available(self) -> bool:
        return self.error is None

    @property
    def has_value(self) -> bool:
        return self.last_updated is not None

    def updated(self, value: Any, at: Optional[datetime] = None) -> "MetricSlot":
        return MetricSlot(value=value, last_updated=at or utcnow(), error=None)

    def failed(self, error: str) -> "MetricSlot":
        return self.model_copy(update={"error": error})


class SyncSnapshot(BaseModel):
    """
    Shared metric snapshot.

    Attributes:
        metrics: Slot per metric key.
        error: Aggregated error message from the last refresh, if any.
        failed_count: Number of metrics that failed on the last full refresh.
        loading: True while a full refresh is in flight.
        last_updated: When any slot was last written.
    """

    model_config = {"frozen": True}

    metrics: Dict[str, MetricSlot] = Field(default_factory=dict)
    error: Optional[str] = None
    failed_count: int = Field(default=0, ge=0)
    loading: bool = False
    last_updated: Optional[datetime] = None

    @classmethod
    def empty(cls, keys: Iterable[str]) -> "SyncSnapshot":
        return cls(metrics={key: MetricSlot() for key in keys}, loading=True)

    def value(self, key: str) -> Any:
        slot = self.metrics.get(key)
        return slot.value if slot is not None else None

    @property
    def unavailable(self) -> list[str]:
        return [key for key, slot in self.metrics.items() if not slot.is_available]


class PollingStatus(BaseModel):
    """Polling activity summary."""

    model_config = {"frozen": True}

    is_active: bool = False
    last_update: Optional[datetime] = None
    error_count: int = Field(default=0, ge=0)
    tasks: Dict[str, TaskStatus] = Field(default_factory=dict)


class CoordinatorStatus(BaseModel):
    """Coordinator, polling and channel state for status endpoints."""

    model_config = {"frozen": True}

    alive: bool
    loading: bool
    error: Optional[str] = None
    last_updated: Optional[datetime] = None
    unavailable: List[str] = Field(default_factory=list)
    polling: PollingStatus
    channel_state: Optional[str] = Field(
        default=None, description="Push channel state, None without a channel"
    )
    channel_connected: bool = False
    channel_error: Optional[str] = None
    last_message_type: Optional[str] = None
