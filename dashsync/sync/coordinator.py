"""
Sync coordinator.

Keeps the shared metric snapshot current by combining three update paths:

    1. Fine-grained polling: one TaskScheduler task per metric
    2. Coarse auto-refresh: a full refresh on a fixed interval
    3. Push events: PushChannelClient messages mapped to targeted or full
       refreshes

Arbitration:
    When the push channel is the primary path, configure
    ``auto_refresh=False`` and ``enable_polling=False``. The coordinator
    does not enforce this; it logs ``coordinator_double_refresh`` when the
    channel opens while polling is also active.

Failure semantics:
    A failed fetch keeps the metric's last good value and flags its slot
    unavailable. A full refresh reports "{n} failed" instead of raw errors.
    After close() no in-flight fetch may write to the snapshot.
"""

import asyncio
import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

import structlog

from dashsync.channel.push_client import PushChannelClient
from dashsync.config.models import CoordinatorConfig, MetricConfig, TaskConfig
from dashsync.errors import (
    ChannelBusyError,
    ChannelConnectError,
    TaskNotFoundError,
    TransientFetchFailure,
    UnknownMetricError,
)
from dashsync.models.channel import ChannelEvent, ChannelEventType, ChannelMessage
from dashsync.models.snapshot import (
    CoordinatorStatus,
    MetricSlot,
    PollingStatus,
    SyncSnapshot,
    utcnow,
)
from dashsync.models.tasks import ExecutionResult, Fetcher, ScheduledTask
from dashsync.scheduler.task_scheduler import TaskScheduler

logger = structlog.get_logger(__name__)

SnapshotListener = Callable[[SyncSnapshot], Any]

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


class SyncCoordinator:
    """
    Orchestrates polling and push updates against one metric snapshot.

    Attributes:
        config: Refresh arbitration settings.
        scheduler: Shared task scheduler.
        channel: Shared push channel, if any.

    Example:
        >>> coordinator = SyncCoordinator(
        ...     fetchers=pool.build(config.metrics),
        ...     scheduler=scheduler,
        ...     channel=channel,
        ...     config=config.coordinator,
        ...     metrics=config.metrics,
        ... )
        >>> await coordinator.start()
        >>> coordinator.snapshot().value("quick_stats")
    """

    def __init__(
        self,
        fetchers: Dict[str, Fetcher],
        scheduler: TaskScheduler,
        channel: Optional[PushChannelClient] = None,
        config: Optional[CoordinatorConfig] = None,
        metrics: Optional[Dict[str, MetricConfig]] = None,
    ):
        """
        Initialize the coordinator. Nothing is registered until start().

        Args:
            fetchers: Fetcher per metric key.
            scheduler: Scheduler that runs the polling tasks.
            channel: Push channel to subscribe to.
            config: Refresh arbitration settings.
            metrics: Per-metric names and polling settings. Metrics without
                an entry poll with TaskConfig defaults.
        """
        if not fetchers:
            raise ValueError("At least one fetcher is required")

        self.config = config or CoordinatorConfig()
        self.scheduler = scheduler
        self.channel = channel

        self._fetchers: Dict[str, Fetcher] = dict(fetchers)
        self._metrics: Dict[str, MetricConfig] = dict(metrics or {})

        self._snapshot = SyncSnapshot.empty(self._fetchers)
        self._alive = True
        self._started = False

        self._task_ids: Dict[str, str] = {}
        self._unsubscribers: List[Callable[[], None]] = []
        self._listeners: Dict[int, SnapshotListener] = {}
        self._next_token = 0

        self._auto_refresh_task: Optional[asyncio.Task] = None
        self._full_refresh: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

        self._polling_last_update: Optional[datetime] = None
        self._polling_error_count = 0
        self._last_message: Optional[ChannelMessage] = None
        self._channel_error: Optional[str] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """
        Register polling tasks and channel handlers, then begin refreshing.

        The initial full refresh runs in the background. When
        ``auto_connect`` is set the channel is connected before returning;
        a failed connect is logged and recorded, not raised.
        """
        if self._started or not self._alive:
            return
        self._started = True

        if self.config.enable_polling:
            self._register_tasks()
            self.scheduler.start()

        if self.channel is not None:
            self._subscribe_channel(self.channel)

        if self.config.auto_refresh:
            self._auto_refresh_task = asyncio.create_task(self._auto_refresh_loop())

        if self.config.initial_refresh:
            self._spawn(self.refresh())
        else:
            self._publish(self._snapshot.model_copy(update={"loading": False}))

        logger.info(
            "coordinator_started",
            metrics=list(self._fetchers),
            polling=self.config.enable_polling,
            auto_refresh=self.config.auto_refresh,
            channel=self.channel is not None,
        )

        if self.channel is not None and self.config.auto_connect:
            await self.connect()

    async def close(self) -> None:
        """
        Tear down everything this coordinator created.

        Timers, scheduler tasks and channel handlers are released before the
        first suspension point; in-flight refreshes are then cancelled.
        """
        if not self._alive:
            return
        self._alive = False

        if self._auto_refresh_task is not None:
            self._auto_refresh_task.cancel()

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        for task_id in self._task_ids.values():
            self.scheduler.remove_task(task_id)
        self._task_ids.clear()

        pending = [t for t in self._background if not t.done()]
        if self._full_refresh is not None and not self._full_refresh.done():
            pending.append(self._full_refresh)
        if self._auto_refresh_task is not None:
            pending.append(self._auto_refresh_task)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        if self.channel is not None and self.config.auto_connect:
            await self.channel.disconnect()

        self._listeners.clear()
        logger.info("coordinator_closed")

    @property
    def is_alive(self) -> bool:
        return self._alive

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh(self) -> SyncSnapshot:
        """
        Fetch every metric concurrently and wait for all of them to settle.

        Concurrent callers share one in-flight refresh.

        Returns:
            SyncSnapshot: The snapshot after the refresh.
        """
        if not self._alive:
            return self._snapshot

        if self._full_refresh is None or self._full_refresh.done():
            self._full_refresh = asyncio.create_task(self._run_full_refresh())

        return await asyncio.shield(self._full_refresh)

    async def _run_full_refresh(self) -> SyncSnapshot:
        keys = list(self._fetchers)
        self._publish(self._snapshot.model_copy(update={"loading": True, "error": None}))

        logger.debug("full_refresh_started", metrics_count=len(keys))
        results = await asyncio.gather(
            *(self._fetchers[key]() for key in keys),
            return_exceptions=True,
        )

        if not self._alive:
            return self._snapshot

        now = utcnow()
        metrics = dict(self._snapshot.metrics)
        failed: List[str] = []

        for key, result in zip(keys, results):
            slot = metrics.get(key, MetricSlot())
            if isinstance(result, BaseException):
                failed.append(key)
                metrics[key] = slot.failed(_describe(result))
                logger.warning(
                    "metric_refresh_failed",
                    metric=key,
                    error=str(result),
                    error_type=type(result).__name__,
                )
            else:
                metrics[key] = slot.updated(result, at=now)

        succeeded = len(keys) - len(failed)
        snapshot = SyncSnapshot(
            metrics=metrics,
            error=f"{len(failed)} failed" if failed else None,
            failed_count=len(failed),
            loading=False,
            last_updated=now if succeeded else self._snapshot.last_updated,
        )
        self._publish(snapshot)

        if failed:
            logger.warning(
                "full_refresh_partial",
                failed=failed,
                succeeded=succeeded,
            )
        else:
            logger.info("full_refresh_completed", metrics_count=len(keys))

        return snapshot

    async def refresh_metric(self, key: str) -> Optional[MetricSlot]:
        """
        Re-fetch one metric and update only its slot.

        A fetch failure flags the slot unavailable and keeps its value; it
        is not raised.

        Args:
            key: Metric key. camelCase names are accepted.

        Returns:
            Optional[MetricSlot]: The slot after the refresh, or None if
            the coordinator was closed meanwhile.

        Raises:
            UnknownMetricError: If no fetcher is registered for the key.
        """
        metric = self._require_metric(key)
        if not self._alive:
            return None

        try:
            value = await self._fetchers[metric]()
        except Exception as e:
            logger.warning(
                "metric_refresh_failed",
                metric=metric,
                error=str(e),
                error_type=type(e).__name__,
            )
            return self._mark_failed(metric, _describe(e))

        return self._write_value(metric, value)

    async def run_now(self, key: Optional[str] = None) -> List[ExecutionResult]:
        """
        Run polling tasks immediately through the scheduler.

        Args:
            key: Metric whose task to run; all of this coordinator's tasks
                when omitted.

        Returns:
            List[ExecutionResult]: One result per task run.

        Raises:
            UnknownMetricError: If ``key`` names no metric.
            TaskNotFoundError: If polling is disabled, so no task exists.
        """
        if key is not None:
            metric = self._require_metric(key)
            task_id = self._task_ids.get(metric)
            if task_id is None:
                raise TaskNotFoundError(self.task_id_for(metric))
            return [await self.scheduler.run_task_now(task_id)]

        task_ids = list(self._task_ids.values())
        outcomes = await asyncio.gather(
            *(self.scheduler.run_task_now(task_id) for task_id in task_ids),
            return_exceptions=True,
        )

        results: List[ExecutionResult] = []
        for task_id, outcome in zip(task_ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("task_run_now_failed", task_id=task_id, error=str(outcome))
                continue
            results.append(outcome)
        return results

    async def request_update(self, key: Optional[str] = None) -> bool:
        """
        Ask the push source to send fresh data.

        Returns:
            bool: False when there is no channel or it is not open.
        """
        if self.channel is None:
            return False
        return await self.channel.send("request_update", {"metricType": key or "all"})

    # =========================================================================
    # Channel
    # =========================================================================

    async def connect(self) -> bool:
        """
        Connect the push channel, recording rather than raising failures.

        Returns:
            bool: True if the channel is open afterwards.
        """
        if self.channel is None:
            return False

        self._channel_error = None
        try:
            await self.channel.connect()
        except (ChannelConnectError, ChannelBusyError) as e:
            self._channel_error = str(e)
            logger.error("coordinator_connect_failed", error=str(e))
            return False

        return self.channel.is_connected

    async def handle_channel_message(self, message: ChannelMessage) -> None:
        """
        Route one push event to the refresh it implies.

        Unrecognised subtypes are logged and ignored.
        """
        if not self._alive:
            return

        self._last_message = message
        data = message.data if isinstance(message.data, dict) else {}

        if message.type == "dashboard_update":
            subtype = message.subtype
            if subtype in self.config.full_refresh_subtypes:
                await self.refresh()
            elif subtype in self.config.dashboard_routes:
                await self._refresh_routed(self.config.dashboard_routes[subtype])
            else:
                logger.info("dashboard_update_unknown_subtype", subtype=subtype)

        elif message.type == "notification_update":
            if data.get("type") == "new_notification" and self.config.notification_metric:
                await self._refresh_routed(self.config.notification_metric)

        elif message.type == "metrics_update":
            metric_type = data.get("metricType")
            if metric_type:
                await self._refresh_routed(metric_type)

        elif message.type == "error":
            self._channel_error = data.get("error") or "Push channel error"
            logger.error("channel_error_received", error=self._channel_error, data=message.data)

        elif message.type == "pong":
            logger.debug("channel_pong_received", timestamp=data.get("timestamp"))

    async def _refresh_routed(self, name: str) -> None:
        metric = self.resolve_metric(name)
        if metric is None:
            logger.info("push_refresh_unknown_metric", metric=name)
            return
        await self.refresh_metric(metric)

    def _subscribe_channel(self, channel: PushChannelClient) -> None:
        for message_type in (
            "dashboard_update",
            "notification_update",
            "metrics_update",
            "error",
            "pong",
        ):
            self._unsubscribers.append(channel.subscribe(message_type, self._on_channel_message))
        self._unsubscribers.append(channel.add_listener(self._on_channel_event))

    def _on_channel_message(self, message: ChannelMessage) -> None:
        # Refresh off the reader task so slow fetches never stall the socket
        self._spawn(self.handle_channel_message(message))

    def _on_channel_event(self, event: ChannelEvent) -> None:
        if event.type != ChannelEventType.OPENED:
            return
        self._channel_error = None
        if self._alive and (self.config.enable_polling or self.config.auto_refresh):
            logger.warning(
                "coordinator_double_refresh",
                polling=self.config.enable_polling,
                auto_refresh=self.config.auto_refresh,
            )

    # =========================================================================
    # Polling
    # =========================================================================

    def task_id_for(self, key: str) -> str:
        """Scheduler task id for a metric, e.g. ``dashboard-quick-stats``."""
        return f"{self.config.task_prefix}-{key.replace('_', '-')}"

    def _register_tasks(self) -> None:
        for key, fetch in self._fetchers.items():
            metric = self._metrics.get(key)
            task = ScheduledTask(
                id=self.task_id_for(key),
                name=metric.name if metric is not None else key.replace("_", " ").title(),
                fetch=fetch,
                config=metric.task if metric is not None else TaskConfig(),
                on_success=self._polling_success_hook(key),
                on_error=self._polling_error_hook(key),
            )
            self.scheduler.add_task(task)
            self._task_ids[key] = task.id

    def _polling_success_hook(self, key: str) -> Callable[[Any], None]:
        def on_success(value: Any) -> None:
            if not self._alive:
                return
            self._polling_last_update = utcnow()
            self._write_value(key, value)

        return on_success

    def _polling_error_hook(self, key: str) -> Callable[[TransientFetchFailure], None]:
        def on_error(failure: TransientFetchFailure) -> None:
            if not self._alive:
                return
            self._polling_error_count += 1
            self._mark_failed(key, _describe(failure.cause))

        return on_error

    async def _auto_refresh_loop(self) -> None:
        interval = self.config.refresh_interval_ms / 1000.0
        while self._alive:
            await asyncio.sleep(interval)
            if self._alive:
                await self.refresh()

    # =========================================================================
    # Read model
    # =========================================================================

    def snapshot(self) -> SyncSnapshot:
        """Current snapshot. Frozen; safe to hold."""
        return self._snapshot

    def polling_status(self) -> PollingStatus:
        """Polling activity for this coordinator's tasks."""
        tasks = {}
        for task_id in self._task_ids.values():
            status = self.scheduler.get_task_status(task_id)
            if status is not None:
                tasks[task_id] = status

        return PollingStatus(
            is_active=bool(tasks) and self.scheduler.is_active and not self.scheduler.is_paused,
            last_update=self._polling_last_update,
            error_count=self._polling_error_count,
            tasks=tasks,
        )

    def status(self) -> CoordinatorStatus:
        """Coordinator, polling and channel state in one view."""
        channel = self.channel
        return CoordinatorStatus(
            alive=self._alive,
            loading=self._snapshot.loading,
            error=self._snapshot.error,
            last_updated=self._snapshot.last_updated,
            unavailable=self._snapshot.unavailable,
            polling=self.polling_status(),
            channel_state=channel.state.value if channel is not None else None,
            channel_connected=channel.is_connected if channel is not None else False,
            channel_error=self._channel_error,
            last_message_type=self._last_message.type if self._last_message else None,
        )

    def metric_keys(self) -> List[str]:
        return list(self._fetchers)

    def resolve_metric(self, name: str) -> Optional[str]:
        """Map a metric key or its camelCase spelling to a registered key."""
        if name in self._fetchers:
            return name
        snake = _CAMEL_BOUNDARY.sub("_", name).lower()
        return snake if snake in self._fetchers else None

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        """
        Subscribe to snapshot replacements.

        Returns:
            Callable[[], None]: Removes the listener.
        """
        token = self._next_token
        self._next_token += 1
        self._listeners[token] = listener

        def remove() -> None:
            self._listeners.pop(token, None)

        return remove

    # =========================================================================
    # Snapshot writes
    # =========================================================================

    def _require_metric(self, key: str) -> str:
        metric = self.resolve_metric(key)
        if metric is None:
            raise UnknownMetricError(key)
        return metric

    def _write_value(self, key: str, value: Any) -> Optional[MetricSlot]:
        if not self._alive:
            return None
        now = utcnow()
        slot = self._snapshot.metrics.get(key, MetricSlot()).updated(value, at=now)
        self._publish(
            self._snapshot.model_copy(
                update={"metrics": {**self._snapshot.metrics, key: slot}, "last_updated": now}
            )
        )
        logger.debug("metric_updated", metric=key)
        return slot

    def _mark_failed(self, key: str, error: str) -> Optional[MetricSlot]:
        if not self._alive:
            return None
        slot = self._snapshot.metrics.get(key, MetricSlot()).failed(error)
        self._publish(
            self._snapshot.model_copy(update={"metrics": {**self._snapshot.metrics, key: slot}})
        )
        return slot

    def _publish(self, snapshot: SyncSnapshot) -> None:
        if not self._alive:
            return
        self._snapshot = snapshot
        for listener in list(self._listeners.values()):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error("snapshot_listener_failed", error=str(e))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def __repr__(self) -> str:
        """Return string representation."""
        return (
            f"SyncCoordinator(metrics={len(self._fetchers)}, "
            f"alive={self._alive}, "
            f"polling={self.config.enable_polling})"
        )


def _describe(error: BaseException) -> str:
    return str(error) or type(error).__name__
