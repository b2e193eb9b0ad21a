# tests/test_config.py

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from dashsync.config import (
    DEFAULT_METRICS,
    AppConfig,
    ConfigLoader,
    ConfigLoadError,
    LogFormat,
    LogLevel,
    TaskConfig,
    TaskPriority,
    load_config,
)

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("DASHSYNC_CHANNEL_URL", "DASHSYNC_API_BASE_URL", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


def write(directory: Path, name: str, text: str) -> None:
    (directory / name).write_text(text, encoding="utf-8")


def test_shipped_config_matches_defaults() -> None:
    config = load_config(REPO_CONFIG)

    assert config.metrics == DEFAULT_METRICS
    assert config.channel.max_reconnect_attempts == 10
    assert config.coordinator.dashboard_routes["tasks_update"] == "task_metrics"
    assert config.logging.format == LogFormat.JSON


def test_empty_directory_falls_back_to_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path)

    assert config == AppConfig()
    assert list(config.metrics) == list(DEFAULT_METRICS)


def test_missing_directory_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError):
        ConfigLoader(tmp_path / "nope")


def test_file_instead_of_directory_raises(tmp_path: Path) -> None:
    target = tmp_path / "config.yaml"
    target.write_text("{}", encoding="utf-8")

    with pytest.raises(ConfigLoadError):
        ConfigLoader(target)


def test_custom_metric_catalogue(tmp_path: Path) -> None:
    write(
        tmp_path,
        "metrics.yaml",
        """
metrics:
  uptime:
    name: Uptime
    path: /status/uptime
    task:
      interval_ms: 5000
      priority: critical
""",
    )

    config = load_config(tmp_path)

    assert list(config.metrics) == ["uptime"]
    assert config.get_metric("uptime").task.priority == TaskPriority.CRITICAL
    assert config.get_metric("quick_stats") is None


def test_enabled_metrics(tmp_path: Path) -> None:
    write(
        tmp_path,
        "metrics.yaml",
        """
metrics:
  a: {name: A, path: /a}
  b: {name: B, path: /b, task: {enabled: false}}
""",
    )

    assert load_config(tmp_path).get_enabled_metrics() == ["a"]


def test_invalid_yaml_raises(tmp_path: Path) -> None:
    write(tmp_path, "channel.yaml", "channel: [unclosed")

    with pytest.raises(ConfigLoadError) as excinfo:
        load_config(tmp_path)

    assert excinfo.value.file_path == tmp_path / "channel.yaml"


def test_non_mapping_yaml_raises(tmp_path: Path) -> None:
    write(tmp_path, "agent.yaml", "- just\n- a list\n")

    with pytest.raises(ConfigLoadError):
        load_config(tmp_path)


def test_invalid_values_raise(tmp_path: Path) -> None:
    write(tmp_path, "metrics.yaml", "metrics:\n  a: {name: A, path: /a, task: {backoff_multiplier: 0.5}}\n")

    with pytest.raises(ConfigLoadError) as excinfo:
        load_config(tmp_path)

    assert isinstance(excinfo.value.cause, ValidationError)


def test_unknown_keys_are_rejected(tmp_path: Path) -> None:
    write(tmp_path, "coordinator.yaml", "coordinator:\n  polling: true\n")

    with pytest.raises(ConfigLoadError):
        load_config(tmp_path)


def test_environment_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    write(tmp_path, "channel.yaml", "channel:\n  url: ws://from-file/ws\n")
    monkeypatch.setenv("DASHSYNC_CHANNEL_URL", "wss://push.example.com/ws")
    monkeypatch.setenv("DASHSYNC_API_BASE_URL", "https://api.example.com")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    config = load_config(tmp_path)

    assert config.channel.url == "wss://push.example.com/ws"
    assert config.fetcher.base_url == "https://api.example.com"
    assert config.logging.level == LogLevel.DEBUG


def test_invalid_log_level_env_is_ignored(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "chatty")

    assert load_config(tmp_path).logging.level == LogLevel.INFO


def test_empty_metric_catalogue_is_invalid() -> None:
    with pytest.raises(ValidationError):
        AppConfig(metrics={})


def test_task_config_bounds() -> None:
    with pytest.raises(ValidationError):
        TaskConfig(interval_ms=0)
    with pytest.raises(ValidationError):
        TaskConfig(max_retries=-1)
    with pytest.raises(ValidationError):
        TaskConfig(backoff_multiplier=0.9)

    assert TaskConfig(max_retries=0).max_retries == 0


def test_priority_factors() -> None:
    assert [p.factor for p in (TaskPriority.CRITICAL, TaskPriority.HIGH, TaskPriority.MEDIUM, TaskPriority.LOW)] == [
        0.5,
        0.75,
        1.0,
        1.5,
    ]
