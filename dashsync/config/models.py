"""
Pydantic models for application configuration.

This module defines all configuration models that are validated when loading
YAML configuration files. The models ensure type safety and provide sensible
defaults for optional settings.

All durations are expressed in milliseconds unless the field name says
otherwise (``timeout_seconds``).

Configuration files:
    - config/metrics.yaml: Metric catalogue and per-metric polling settings
    - config/channel.yaml: Push channel connection settings
    - config/coordinator.yaml: Refresh arbitration and event routing
    - config/agent.yaml: Fetcher, API and logging settings

Example:
    >>> from dashsync.config.models import AppConfig
    >>> config = AppConfig()
    >>> config.get_metric("quick_stats").task.interval_ms
    30000

Note:
    Event routes pointing at metrics missing from the catalogue are not a
    validation error; the coordinator ignores them at dispatch time.
"""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


# =============================================================================
# ENUMS
# =============================================================================


class TaskPriority(str, Enum):
    """
    Scheduling priority of a polling task.

    Higher priorities shorten the effective delay between executions and
    between retries.
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def factor(self) -> float:
        """Multiplier applied to a task's computed delay."""
        return PRIORITY_FACTORS[self]


PRIORITY_FACTORS: Dict[TaskPriority, float] = {
    TaskPriority.CRITICAL: 0.5,
    TaskPriority.HIGH: 0.75,
    TaskPriority.MEDIUM: 1.0,
    TaskPriority.LOW: 1.5,
}


class LogFormat(str, Enum):
    """Logging format options."""

    JSON = "json"
    TEXT = "text"


class LogLevel(str, Enum):
    """Logging level options."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


# =============================================================================
# POLLING CONFIGURATION
# =============================================================================


class TaskConfig(BaseModel):
    """Polling settings for one scheduled task."""

    model_config = {"frozen": True, "extra": "forbid"}

    interval_ms: int = Field(
        default=60000,
        description="Base delay between executions",
        gt=0,
    )
    max_retries: int = Field(
        default=3,
        description="Consecutive failures before the task is disabled",
        ge=0,
    )
    backoff_multiplier: float = Field(
        default=2.0,
        description="Exponential growth factor applied per consecutive failure",
        ge=1.0,
    )
    enabled: bool = Field(
        default=True,
        description="Whether the task is scheduled",
    )
    priority: TaskPriority = Field(
        default=TaskPriority.MEDIUM,
        description="Scheduling priority",
    )


class MetricConfig(BaseModel):
    """A dashboard metric and how it is fetched."""

    model_config = {"frozen": True, "extra": "forbid"}

    name: str = Field(
        ...,
        description="Human-readable metric name",
        min_length=1,
    )
    path: str = Field(
        ...,
        description="Backend endpoint path, relative to the fetcher base URL",
        min_length=1,
    )
    task: TaskConfig = Field(
        default_factory=TaskConfig,
        description="Polling settings for this metric",
    )


def _metric(
    name: str,
    path: str,
    interval_ms: int,
    priority: TaskPriority,
    max_retries: int = 3,
    backoff_multiplier: float = 2.0,
) -> MetricConfig:
    return MetricConfig(
        name=name,
        path=path,
        task=TaskConfig(
            interval_ms=interval_ms,
            max_retries=max_retries,
            backoff_multiplier=backoff_multiplier,
            priority=priority,
        ),
    )


DEFAULT_METRICS: Dict[str, MetricConfig] = {
    "quick_stats": _metric(
        "Quick Stats", "/dashboard/quick-stats", 30000, TaskPriority.HIGH
    ),
    "task_metrics": _metric(
        "Task Metrics", "/dashboard/tasks-metrics", 60000, TaskPriority.MEDIUM
    ),
    "lead_metrics": _metric(
        "Lead Metrics", "/dashboard/leads-metrics", 120000, TaskPriority.MEDIUM
    ),
    "financial_metrics": _metric(
        "Financial Metrics", "/dashboard/financial-metrics", 300000, TaskPriority.LOW
    ),
    "system_metrics": _metric(
        "System Metrics",
        "/dashboard/system-metrics",
        15000,
        TaskPriority.CRITICAL,
        max_retries=5,
        backoff_multiplier=1.5,
    ),
    "notifications": _metric(
        "Notifications",
        "/dashboard/notifications",
        10000,
        TaskPriority.CRITICAL,
        max_retries=5,
        backoff_multiplier=1.5,
    ),
}


# =============================================================================
# PUSH CHANNEL CONFIGURATION
# =============================================================================


class PushChannelConfig(BaseModel):
    """Connection settings for the push channel."""

    model_config = {"frozen": True, "extra": "forbid"}

    enabled: bool = Field(
        default=True,
        description="Whether the push channel is used at all",
    )
    url: str = Field(
        default="ws://localhost:8080/ws",
        description="WebSocket endpoint URL",
        min_length=1,
    )
    reconnect_interval_ms: int = Field(
        default=5000,
        description="Base delay for reconnection backoff",
        gt=0,
    )
    max_reconnect_attempts: int = Field(
        default=10,
        description="Automatic reconnection attempts before giving up",
        ge=0,
    )
    heartbeat_interval_ms: int = Field(
        default=30000,
        description="Interval between ping messages while open",
        gt=0,
    )
    max_reconnect_delay_ms: int = Field(
        default=30000,
        description="Upper bound on the reconnection delay",
        gt=0,
    )
    close_timeout_seconds: int = Field(
        default=10,
        description="Seconds to wait for the closing handshake",
        ge=1,
    )


# =============================================================================
# COORDINATOR CONFIGURATION
# =============================================================================


DEFAULT_DASHBOARD_ROUTES: Dict[str, str] = {
    "quick_stats_update": "quick_stats",
    "financial_metrics_update": "financial_metrics",
    "system_metrics_update": "system_metrics",
    "tasks_update": "task_metrics",
    "leads_update": "lead_metrics",
}


class CoordinatorConfig(BaseModel):
    """
    Refresh arbitration settings.

    When the push channel is the primary update path, set ``auto_refresh``
    and ``enable_polling`` to false. Nothing enforces this: a coordinator
    with both the channel and polling active refreshes the same metrics
    twice.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    auto_refresh: bool = Field(
        default=True,
        description="Run a full refresh on a fixed interval",
    )
    refresh_interval_ms: int = Field(
        default=300000,
        description="Interval between automatic full refreshes",
        gt=0,
    )
    enable_polling: bool = Field(
        default=True,
        description="Register one scheduler task per metric",
    )
    auto_connect: bool = Field(
        default=False,
        description="Connect the push channel on start and disconnect it on close",
    )
    initial_refresh: bool = Field(
        default=True,
        description="Run a full refresh as soon as the coordinator starts",
    )
    task_prefix: str = Field(
        default="dashboard",
        description="Prefix for scheduler task ids owned by the coordinator",
        min_length=1,
    )
    dashboard_routes: Dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_DASHBOARD_ROUTES),
        description="dashboard_update subtype to metric key",
    )
    full_refresh_subtypes: List[str] = Field(
        default_factory=lambda: ["full_dashboard_update"],
        description="dashboard_update subtypes that trigger a full refresh",
    )
    notification_metric: Optional[str] = Field(
        default="notifications",
        description="Metric refreshed on new_notification events",
    )


# =============================================================================
# AGENT CONFIGURATION
# =============================================================================


class FetcherConfig(BaseModel):
    """HTTP fetcher settings."""

    model_config = {"frozen": True, "extra": "forbid"}

    base_url: str = Field(
        default="http://localhost:8080/api",
        description="Backend REST API base URL",
        min_length=1,
    )
    timeout_seconds: int = Field(
        default=10,
        description="Per-request timeout",
        ge=1,
        le=300,
    )
    headers: Dict[str, str] = Field(
        default_factory=dict,
        description="Extra headers sent with every request",
    )


class ApiConfig(BaseModel):
    """Read-model API server settings."""

    model_config = {"frozen": True, "extra": "forbid"}

    host: str = Field(
        default="127.0.0.1",
        description="Host to bind to",
    )
    port: int = Field(
        default=8060,
        description="Port to listen on",
        ge=1,
        le=65535,
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = {"frozen": True, "extra": "forbid"}

    format: LogFormat = Field(
        default=LogFormat.JSON,
        description="Log output format",
    )
    level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Default log level",
    )


# =============================================================================
# ROOT CONFIGURATION
# =============================================================================


class AppConfig(BaseModel):
    """
    Root application configuration.

    Aggregates all configuration sections into a single validated object.

    Example:
        >>> config = AppConfig(metrics={"cpu": MetricConfig(name="CPU", path="/cpu")})
        >>> config.get_metric("cpu").task.priority
        <TaskPriority.MEDIUM: 'medium'>
    """

    model_config = {"frozen": True, "extra": "forbid"}

    metrics: Dict[str, MetricConfig] = Field(
        default_factory=lambda: dict(DEFAULT_METRICS),
        description="Metric catalogue keyed by metric key",
    )
    channel: PushChannelConfig = Field(
        default_factory=PushChannelConfig,
        description="Push channel settings",
    )
    coordinator: CoordinatorConfig = Field(
        default_factory=CoordinatorConfig,
        description="Refresh arbitration settings",
    )
    fetcher: FetcherConfig = Field(
        default_factory=FetcherConfig,
        description="HTTP fetcher settings",
    )
    api: ApiConfig = Field(
        default_factory=ApiConfig,
        description="Read-model API settings",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging settings",
    )

    @model_validator(mode="after")
    def validate_config(self) -> "AppConfig":
        """Validate the metric catalogue."""
        # Routes to metrics outside the catalogue are tolerated; the
        # coordinator logs and ignores them when an event arrives.
        if not self.metrics:
            raise ValueError("At least one metric must be configured")
        return self

    def get_metric(self, key: str) -> Optional[MetricConfig]:
        """
        Get metric configuration by key.

        Args:
            key: Metric key (e.g., "quick_stats")

        Returns:
            Optional[MetricConfig]: Metric config or None if not found.
        """
        return self.metrics.get(key)

    def get_enabled_metrics(self) -> List[str]:
        """
        Get keys of metrics whose polling task is enabled.

        Returns:
            List[str]: Metric keys in configuration order.
        """
        return [key for key, metric in self.metrics.items() if metric.task.enabled]
