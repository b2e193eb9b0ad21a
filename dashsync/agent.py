"""
Sync agent composition root.

Builds the process-wide service instances from AppConfig and owns their
lifecycle:

    LivenessSignal ──► TaskScheduler ◄── SyncCoordinator ──► PushChannelClient
                                              │
                                       HttpFetcherPool

There is exactly one scheduler and one channel per agent. Consumers receive
them by reference; nothing here is module-level state.
"""

from typing import Dict, Optional

import structlog

from dashsync.channel.push_client import PushChannelClient
from dashsync.config.models import AppConfig
from dashsync.fetchers.http import HttpFetcherPool
from dashsync.interfaces.liveness import LivenessSignal
from dashsync.models.tasks import Fetcher
from dashsync.scheduler.task_scheduler import TaskScheduler
from dashsync.sync.coordinator import SyncCoordinator

logger = structlog.get_logger(__name__)


class SyncAgent:
    """
    Owns the scheduler, push channel, fetchers and coordinator.

    Attributes:
        config: Application configuration.
        liveness: Visibility signal driving scheduler pause/resume.
        scheduler: Shared task scheduler.
        channel: Shared push channel, or None when disabled.
        coordinator: Snapshot coordinator.

    Example:
        >>> agent = SyncAgent(load_config("config"))
        >>> await agent.start()
        >>> agent.coordinator.snapshot()
        >>> await agent.stop()
    """

    def __init__(
        self,
        config: AppConfig,
        fetchers: Optional[Dict[str, Fetcher]] = None,
        channel: Optional[PushChannelClient] = None,
    ):
        """
        Wire the components together. Nothing runs until start().

        Args:
            config: Application configuration.
            fetchers: Fetcher per metric key. Defaults to HTTP fetchers for
                every configured metric.
            channel: Push channel to use instead of one built from config.
        """
        self.config = config
        self.liveness = LivenessSignal()
        self.scheduler = TaskScheduler(liveness=self.liveness)

        self._pool: Optional[HttpFetcherPool] = None
        if fetchers is None:
            self._pool = HttpFetcherPool(config.fetcher)
            fetchers = self._pool.build(config.metrics)

        if channel is None and config.channel.enabled:
            channel = PushChannelClient(config.channel)
        self.channel = channel

        self.coordinator = SyncCoordinator(
            fetchers=fetchers,
            scheduler=self.scheduler,
            channel=self.channel,
            config=config.coordinator,
            metrics=config.metrics,
        )
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the coordinator, which registers tasks and starts polling."""
        if self._running:
            return

        logger.info(
            "sync_agent_starting",
            metrics=self.coordinator.metric_keys(),
            channel_url=self.channel.url if self.channel is not None else None,
        )
        await self.coordinator.start()
        self._running = True
        logger.info("sync_agent_started")

    async def stop(self) -> None:
        """Tear down in reverse order of construction."""
        if not self._running:
            return
        self._running = False

        logger.info("sync_agent_stopping")

        await self.coordinator.close()
        if self.channel is not None:
            await self.channel.close()
        await self.scheduler.close()
        if self._pool is not None:
            await self._pool.close()

        logger.info("sync_agent_stopped")
