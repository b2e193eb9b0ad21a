# tests/conftest.py

from __future__ import annotations

import pytest
import pytest_asyncio

from dashsync.channel import PushChannelClient
from dashsync.config import PushChannelConfig
from dashsync.interfaces import LivenessSignal
from dashsync.scheduler import TaskScheduler

from .fakes import FakeConnector, RecordingSleep


@pytest.fixture()
def liveness() -> LivenessSignal:
    return LivenessSignal()


@pytest_asyncio.fixture()
async def scheduler(liveness: LivenessSignal):
    """Scheduler bound to the test's liveness signal, closed after the test."""
    scheduler = TaskScheduler(liveness=liveness)
    yield scheduler
    await scheduler.close()


@pytest.fixture()
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture()
def reconnect_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def channel_config() -> PushChannelConfig:
    return PushChannelConfig(
        url="ws://test.invalid/ws",
        reconnect_interval_ms=1000,
        max_reconnect_attempts=10,
        heartbeat_interval_ms=60000,
    )


@pytest_asyncio.fixture()
async def channel(
    channel_config: PushChannelConfig,
    connector: FakeConnector,
    reconnect_sleep: RecordingSleep,
):
    """Push client on a fake socket; disconnected and cleared after the test."""
    client = PushChannelClient(channel_config, connector=connector, sleep=reconnect_sleep)
    yield client
    await client.close()
