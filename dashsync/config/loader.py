"""
Configuration loader for YAML-based application configuration.

This module provides utilities to load and validate configuration from YAML
files. All configuration is validated using Pydantic models to ensure type
safety and catch configuration errors early.

Configuration files read from the config directory (each one optional,
missing files fall back to model defaults):
    - metrics.yaml: Metric catalogue and per-metric polling settings
    - channel.yaml: Push channel connection settings
    - coordinator.yaml: Refresh arbitration and event routing
    - agent.yaml: Fetcher, API and logging settings

Environment variables override:
    - DASHSYNC_CHANNEL_URL: Push channel WebSocket URL
    - DASHSYNC_API_BASE_URL: Backend REST API base URL
    - LOG_LEVEL: Application log level

Example:
    >>> from dashsync.config.loader import load_config
    >>> config = load_config("config")
    >>> print(config.get_enabled_metrics())
    ['quick_stats', 'task_metrics', ...]
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError

from dashsync.config.models import (
    DEFAULT_METRICS,
    ApiConfig,
    AppConfig,
    CoordinatorConfig,
    FetcherConfig,
    LoggingConfig,
    LogLevel,
    MetricConfig,
    PushChannelConfig,
)


class ConfigLoadError(Exception):
    """
    Raised when configuration loading fails.

    Attributes:
        message: Error message describing what went wrong.
        file_path: Path to the file that caused the error, if applicable.
        cause: Original exception that caused the error, if any.
    """

    def __init__(
        self,
        message: str,
        file_path: Optional[Path] = None,
        cause: Optional[Exception] = None,
    ):
        self.message = message
        self.file_path = file_path
        self.cause = cause
        super().__init__(message)


class ConfigLoader:
    """
    Loads and validates application configuration from YAML files.

    Expects the following directory structure:
        config/
        ├── metrics.yaml      - Metric catalogue and polling settings
        ├── channel.yaml      - Push channel connection
        ├── coordinator.yaml  - Refresh arbitration and event routes
        └── agent.yaml        - Fetcher, API and logging

    Example:
        >>> loader = ConfigLoader("config")
        >>> config = loader.load()
        >>> print(config.channel.url)
        ws://localhost:8080/ws
    """

    def __init__(self, config_dir: Path | str = "config"):
        """
        Initialize config loader.

        Args:
            config_dir: Path to configuration directory (default: 'config').

        Raises:
            ConfigLoadError: If config directory does not exist.
        """
        self.config_dir = Path(config_dir)
        if not self.config_dir.exists():
            raise ConfigLoadError(
                f"Configuration directory not found: {self.config_dir}",
                file_path=self.config_dir,
            )
        if not self.config_dir.is_dir():
            raise ConfigLoadError(
                f"Configuration path is not a directory: {self.config_dir}",
                file_path=self.config_dir,
            )

    def _load_yaml(self, filename: str) -> Dict[str, Any]:
        """
        Load a YAML file from the config directory.

        Args:
            filename: Name of YAML file (e.g., 'metrics.yaml').

        Returns:
            Dict containing parsed YAML content, empty if the file is absent
            or empty.

        Raises:
            ConfigLoadError: If the file is unreadable or not a mapping.
        """
        file_path = self.config_dir / filename
        if not file_path.exists():
            return {}

        try:
            with open(file_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigLoadError(
                f"Invalid YAML syntax in {file_path}: {e}",
                file_path=file_path,
                cause=e,
            ) from e
        except OSError as e:
            raise ConfigLoadError(
                f"Error reading {file_path}: {e}",
                file_path=file_path,
                cause=e,
            ) from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigLoadError(
                f"Expected a mapping at the top of {file_path}",
                file_path=file_path,
            )
        return data

    def _load_metrics(self) -> Dict[str, MetricConfig]:
        """
        Load the metric catalogue from metrics.yaml.

        Returns:
            Dict of MetricConfig keyed by metric key. The built-in catalogue
            is used when the file has no ``metrics`` section.

        Raises:
            ConfigLoadError: If validation fails.
        """
        data = self._load_yaml("metrics.yaml")
        raw_metrics = data.get("metrics")
        if not raw_metrics:
            return dict(DEFAULT_METRICS)

        try:
            return {
                key: MetricConfig.model_validate(metric_data)
                for key, metric_data in raw_metrics.items()
            }
        except ValidationError as e:
            raise ConfigLoadError(
                f"Invalid metric configuration: {e}",
                file_path=self.config_dir / "metrics.yaml",
                cause=e,
            ) from e

    def _load_channel(self) -> PushChannelConfig:
        """
        Load push channel settings from channel.yaml.

        Environment variables:
            - DASHSYNC_CHANNEL_URL: overrides ``channel.url``

        Returns:
            PushChannelConfig object.
        """
        data = dict(self._load_yaml("channel.yaml").get("channel") or {})
        url = os.getenv("DASHSYNC_CHANNEL_URL")
        if url:
            data["url"] = url

        try:
            return PushChannelConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigLoadError(
                f"Invalid channel configuration: {e}",
                file_path=self.config_dir / "channel.yaml",
                cause=e,
            ) from e

    def _load_coordinator(self) -> CoordinatorConfig:
        data = self._load_yaml("coordinator.yaml").get("coordinator") or {}
        try:
            return CoordinatorConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigLoadError(
                f"Invalid coordinator configuration: {e}",
                file_path=self.config_dir / "coordinator.yaml",
                cause=e,
            ) from e

    def _load_agent(self) -> tuple[FetcherConfig, ApiConfig, LoggingConfig]:
        """
        Load fetcher, API and logging settings from agent.yaml.

        Environment variables:
            - DASHSYNC_API_BASE_URL: overrides ``fetcher.base_url``
            - LOG_LEVEL: overrides ``logging.level``

        Returns:
            Tuple of (FetcherConfig, ApiConfig, LoggingConfig).
        """
        data = self._load_yaml("agent.yaml")
        fetcher_data = dict(data.get("fetcher") or {})
        logging_data = dict(data.get("logging") or {})

        base_url = os.getenv("DASHSYNC_API_BASE_URL")
        if base_url:
            fetcher_data["base_url"] = base_url

        log_level = self._get_log_level()
        if log_level is not None:
            logging_data["level"] = log_level

        try:
            return (
                FetcherConfig.model_validate(fetcher_data),
                ApiConfig.model_validate(data.get("api") or {}),
                LoggingConfig.model_validate(logging_data),
            )
        except ValidationError as e:
            raise ConfigLoadError(
                f"Invalid agent configuration: {e}",
                file_path=self.config_dir / "agent.yaml",
                cause=e,
            ) from e

    def _get_log_level(self) -> Optional[LogLevel]:
        """
        Get log level from environment.

        Returns:
            LogLevel enum value, or None when LOG_LEVEL is unset or invalid.
        """
        level_str = os.getenv("LOG_LEVEL")
        if not level_str:
            return None
        try:
            return LogLevel(level_str.upper())
        except ValueError:
            return None

    def load(self) -> AppConfig:
        """
        Load and validate all configuration files.

        Returns:
            AppConfig: Validated application configuration.

        Raises:
            ConfigLoadError: If any configuration is invalid.

        Example:
            >>> loader = ConfigLoader("config")
            >>> config = loader.load()
            >>> print(config.get_enabled_metrics())
        """
        try:
            metrics = self._load_metrics()
            channel = self._load_channel()
            coordinator = self._load_coordinator()
            fetcher, api, logging_config = self._load_agent()

            return AppConfig(
                metrics=metrics,
                channel=channel,
                coordinator=coordinator,
                fetcher=fetcher,
                api=api,
                logging=logging_config,
            )

        except ConfigLoadError:
            raise
        except ValidationError as e:
            raise ConfigLoadError(
                f"Configuration validation failed: {e}",
                cause=e,
            ) from e
        except Exception as e:
            raise ConfigLoadError(
                f"Unexpected error loading configuration: {e}",
                cause=e,
            ) from e


def load_config(config_dir: Path | str = "config") -> AppConfig:
    """
    Convenience function to load application configuration.

    Args:
        config_dir: Path to configuration directory (default: 'config').

    Returns:
        AppConfig: Validated application configuration.

    Raises:
        ConfigLoadError: If configuration loading fails.

    Example:
        >>> from dashsync.config import load_config
        >>> config = load_config()
        >>> print(config.channel.heartbeat_interval_ms)
        30000
    """
    loader = ConfigLoader(config_dir)
    return loader.load()
