"""
Configuration management for the dashboard sync engine.

This module handles loading and validating configuration from YAML files.
All configuration values are validated using Pydantic models to ensure
type safety and catch configuration errors early.

The configuration system covers:
- The metric catalogue and per-metric polling cadence, retries and priority
- Push channel connection, reconnection and heartbeat settings
- Refresh arbitration between polling, auto-refresh and push events
- HTTP fetcher, read API and logging settings

Example:
    >>> from dashsync.config import load_config, AppConfig
    >>> config = load_config()
    >>> config.get_metric("system_metrics").task.priority
    <TaskPriority.CRITICAL: 'critical'>

Modules:
    loader: Configuration file loading utilities
    models: Pydantic models for configuration validation
"""

from dashsync.config.loader import ConfigLoadError, ConfigLoader, load_config
from dashsync.config.models import (
    # Enums
    LogFormat,
    LogLevel,
    TaskPriority,
    # Polling config
    DEFAULT_METRICS,
    MetricConfig,
    TaskConfig,
    # Channel config
    PushChannelConfig,
    # Coordinator config
    DEFAULT_DASHBOARD_ROUTES,
    CoordinatorConfig,
    # Agent config
    ApiConfig,
    FetcherConfig,
    LoggingConfig,
    # Root config
    AppConfig,
)

__all__: list[str] = [
    # Loader
    "load_config",
    "ConfigLoader",
    "ConfigLoadError",
    # Enums
    "LogFormat",
    "LogLevel",
    "TaskPriority",
    # Polling config
    "DEFAULT_METRICS",
    "MetricConfig",
    "TaskConfig",
    # Channel config
    "PushChannelConfig",
    # Coordinator config
    "DEFAULT_DASHBOARD_ROUTES",
    "CoordinatorConfig",
    # Agent config
    "ApiConfig",
    "FetcherConfig",
    "LoggingConfig",
    # Root config
    "AppConfig",
]
