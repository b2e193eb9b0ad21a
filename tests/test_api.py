# tests/test_api.py

from __future__ import annotations

from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from dashsync.agent import SyncAgent
from dashsync.api import create_app
from dashsync.api.channel import ChannelStatusResponse
from dashsync.api.health import HealthResponse
from dashsync.channel import PushChannelClient
from dashsync.config import (
    AppConfig,
    CoordinatorConfig,
    MetricConfig,
    PushChannelConfig,
    TaskConfig,
)

from .fakes import FakeConnector, FakeFetcher, RecordingSleep


@pytest.fixture()
def fetchers() -> dict[str, FakeFetcher]:
    return {
        "quick_stats": FakeFetcher({"totalTasks": 12}),
        "system_metrics": FakeFetcher(TimeoutError("upstream timeout"), {"cpu": 0.4}),
    }


@pytest.fixture()
def agent(fetchers: dict[str, FakeFetcher]) -> SyncAgent:
    config = AppConfig(
        metrics={
            "quick_stats": MetricConfig(name="Quick Stats", path="/dashboard/quick-stats"),
            "system_metrics": MetricConfig(
                name="System Metrics",
                path="/dashboard/system-metrics",
                task=TaskConfig(max_retries=1),
            ),
        },
        coordinator=CoordinatorConfig(auto_refresh=False, initial_refresh=False),
        channel=PushChannelConfig(enabled=False),
    )
    return SyncAgent(config, fetchers=fetchers)


@pytest.fixture()
def client(agent: SyncAgent) -> Iterator[TestClient]:
    with TestClient(create_app(agent=agent)) as test_client:
        yield test_client


def test_lifespan_starts_and_stops_agent(agent: SyncAgent) -> None:
    with TestClient(create_app(agent=agent)):
        assert agent.is_running
        assert agent.scheduler.is_active

    assert not agent.is_running
    assert not agent.coordinator.is_alive


def test_snapshot_before_any_refresh(client: TestClient) -> None:
    body = client.get("/api/snapshot").json()

    assert body["loading"] is False
    assert set(body["metrics"]) == {"quick_stats", "system_metrics"}
    assert body["metrics"]["quick_stats"]["value"] is None


def test_full_refresh_reports_failures(client: TestClient) -> None:
    body = client.post("/api/refresh").json()

    assert body["error"] == "1 failed"
    assert body["failed_count"] == 1
    assert body["metrics"]["quick_stats"]["value"] == {"totalTasks": 12}
    assert "upstream timeout" in body["metrics"]["system_metrics"]["error"]


def test_targeted_refresh(client: TestClient, fetchers: dict[str, FakeFetcher]) -> None:
    response = client.post("/api/refresh/quickStats")

    assert response.status_code == 200
    assert response.json()["value"] == {"totalTasks": 12}
    assert fetchers["quick_stats"].calls == 1
    assert fetchers["system_metrics"].calls == 0


def test_targeted_refresh_unknown_metric(client: TestClient) -> None:
    response = client.post("/api/refresh/weather")

    assert response.status_code == 404
    assert "weather" in response.json()["detail"]


def test_list_and_get_tasks(client: TestClient) -> None:
    tasks = client.get("/api/tasks").json()
    assert {task["id"] for task in tasks} == {"dashboard-quick-stats", "dashboard-system-metrics"}

    task = client.get("/api/tasks/dashboard-quick-stats").json()
    assert task["priority"] == "medium"
    assert task["enabled"] is True

    assert client.get("/api/tasks/nope").status_code == 404


def test_run_task_and_reenable_after_exhaustion(client: TestClient) -> None:
    result = client.post("/api/tasks/dashboard-system-metrics/run").json()

    assert result["status"] == "failed"
    assert result["disabled"] is True
    assert client.get("/api/tasks/dashboard-system-metrics").json()["enabled"] is False

    updated = client.patch("/api/tasks/dashboard-system-metrics", json={"enabled": True})

    assert updated.status_code == 200
    assert updated.json()["enabled"] is True
    assert updated.json()["retry_count"] == 0

    result = client.post("/api/tasks/dashboard-system-metrics/run").json()
    assert result["status"] == "succeeded"
    assert result["value"] == {"cpu": 0.4}


def test_patch_rejects_invalid_settings(client: TestClient) -> None:
    assert client.patch("/api/tasks/dashboard-quick-stats", json={"interval_ms": 0}).status_code == 422
    assert client.patch("/api/tasks/dashboard-quick-stats", json={"colour": "red"}).status_code == 422
    assert client.patch("/api/tasks/nope", json={"enabled": True}).status_code == 404


def test_run_unknown_task(client: TestClient) -> None:
    assert client.post("/api/tasks/nope/run").status_code == 404


def test_liveness_pauses_and_resumes_polling(client: TestClient, agent: SyncAgent) -> None:
    hidden = client.post("/api/liveness", json={"visible": False}).json()

    assert hidden == {"visible": False, "scheduler_paused": True}
    assert agent.scheduler.pending_count == 0

    visible = client.post("/api/liveness", json={"visible": True}).json()

    assert visible == {"visible": True, "scheduler_paused": False}
    assert agent.scheduler.pending_count > 0


def test_health_tracks_availability(client: TestClient) -> None:
    before = client.get("/api/health").json()
    assert before["status"] == "healthy"
    assert before["coordinator"]["channel_state"] is None

    client.post("/api/refresh")
    degraded = client.get("/api/health").json()
    assert degraded["status"] == "degraded"
    assert degraded["coordinator"]["unavailable"] == ["system_metrics"]
    assert degraded["coordinator"]["error"] == "1 failed"

    client.post("/api/refresh/system_metrics")

    after = client.get("/api/health").json()
    assert after["status"] == "healthy"
    assert after["coordinator"]["unavailable"] == []
    assert after["visible"] is True


# ---------------------------------------------------------------------------
# Push channel control
# ---------------------------------------------------------------------------


@pytest.fixture()
def channel_client(connector: FakeConnector) -> Iterator[TestClient]:
    config = AppConfig(
        metrics={"quick_stats": MetricConfig(name="Quick Stats", path="/dashboard/quick-stats")},
        coordinator=CoordinatorConfig(
            auto_refresh=False, initial_refresh=False, enable_polling=False
        ),
    )
    channel = PushChannelClient(
        PushChannelConfig(url="ws://push.invalid/ws"),
        connector=connector,
        sleep=RecordingSleep(),
    )
    agent = SyncAgent(config, fetchers={"quick_stats": FakeFetcher({"totalTasks": 1})}, channel=channel)
    with TestClient(create_app(agent=agent)) as test_client:
        yield test_client


def test_channel_stays_closed_until_connected(
    channel_client: TestClient, connector: FakeConnector
) -> None:
    body = channel_client.get("/api/channel").json()

    assert body["state"] == "disconnected"
    assert body["connected"] is False
    assert connector.calls == 0


def test_channel_connect_and_disconnect(
    channel_client: TestClient, connector: FakeConnector
) -> None:
    connected = channel_client.post("/api/channel/connect").json()

    assert connected["state"] == "open"
    assert connected["connected"] is True
    assert connected["url"] == "ws://push.invalid/ws"
    assert connector.calls == 1
    assert channel_client.get("/api/health").json()["coordinator"]["channel_connected"] is True

    disconnected = channel_client.post("/api/channel/disconnect").json()

    assert disconnected["state"] == "disconnected"
    assert connector.last.closed
    assert connector.last.close_code == 1000


def test_channel_connect_failure_is_reported(
    channel_client: TestClient, connector: FakeConnector
) -> None:
    connector.refuse = True

    response = channel_client.post("/api/channel/connect")

    assert response.status_code == 200
    assert response.json()["connected"] is False
    assert "ws://push.invalid/ws" in response.json()["error"]
    channel_client.post("/api/channel/disconnect")


def test_channel_routes_without_channel(client: TestClient) -> None:
    assert client.get("/api/channel").status_code == 409
    assert client.post("/api/channel/connect").status_code == 409
    assert client.post("/api/channel/disconnect").status_code == 409


@pytest.mark.parametrize("model", [HealthResponse, ChannelStatusResponse])
def test_documented_examples_validate(model) -> None:
    example = model.model_config["json_schema_extra"]["example"]

    assert model.model_validate(example)
