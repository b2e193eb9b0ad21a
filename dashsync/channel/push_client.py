"""
Reconnecting push channel client.

Maintains one WebSocket connection to the dashboard push source and fans
inbound events out to subscribers keyed by message type.

Connection Management:
    - State machine: DISCONNECTED -> CONNECTING -> OPEN -> CLOSING -> DISCONNECTED
    - Auto-reconnect with exponential backoff, capped at 30 seconds
    - Application-level heartbeat ({"type": "ping"}) while open
    - Manual disconnect suppresses auto-reconnect until the next connect()

Message Format:
    {"type": "dashboard_update", "data": {...}, "timestamp": 1706270096789}

Consumers share one client instance and multiplex it through subscribe();
they never open their own connections.
"""

import asyncio
import inspect
import itertools
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from dashsync.config.models import PushChannelConfig
from dashsync.errors import (
    ChannelBusyError,
    ChannelConnectError,
    HandlerFailure,
    MalformedMessageError,
)
from dashsync.models.channel import (
    ChannelEvent,
    ChannelEventType,
    ChannelMessage,
    ChannelState,
    now_ms,
)

logger = structlog.get_logger(__name__)

MessageHandler = Callable[[ChannelMessage], Any]
ChannelListener = Callable[[ChannelEvent], Any]
Connector = Callable[..., Awaitable[Any]]
Sleep = Callable[[float], Awaitable[Any]]

HEARTBEAT_TYPE = "ping"


class PushChannelClient:
    """
    Async WebSocket client with reconnection, heartbeat and pub/sub dispatch.

    Attributes:
        config: Channel connection settings.

    Example:
        >>> client = PushChannelClient(PushChannelConfig(url="ws://localhost:8080/ws"))
        >>> unsubscribe = client.subscribe("dashboard_update", on_update)
        >>> await client.connect()
        >>> await client.send("request_update", {"metricType": "all"})
        True
        >>> await client.disconnect()
    """

    def __init__(
        self,
        config: PushChannelConfig,
        connector: Optional[Connector] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        """
        Initialize the client. No connection is opened until connect().

        Args:
            config: Channel connection settings.
            connector: Coroutine function opening a socket for a URL.
                Defaults to ``websockets.connect``.
            sleep: Coroutine used to wait out reconnection delays.
        """
        self.config = config
        self._connector: Connector = connector or websockets.connect
        self._sleep = sleep

        self._ws: Optional[Any] = None
        self._state = ChannelState.DISCONNECTED
        self._reconnect_attempts = 0
        self._manually_disconnected = False
        self._last_message_at: Optional[datetime] = None

        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        self._handlers: Dict[str, Dict[int, MessageHandler]] = {}
        self._listeners: Dict[int, ChannelListener] = {}
        self._tokens = itertools.count()

        logger.info(
            "websocket_client_initialized",
            url=config.url,
            heartbeat_interval_ms=config.heartbeat_interval_ms,
            max_attempts=config.max_reconnect_attempts,
        )

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def url(self) -> str:
        return self.config.url

    @property
    def state(self) -> ChannelState:
        """Current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """Check if the channel is open."""
        return self._state == ChannelState.OPEN and self._ws is not None

    @property
    def reconnect_attempts(self) -> int:
        """Automatic reconnection attempts since the last successful open."""
        return self._reconnect_attempts

    @property
    def manually_disconnected(self) -> bool:
        return self._manually_disconnected

    @property
    def last_message_at(self) -> Optional[datetime]:
        """Get timestamp of last received frame."""
        return self._last_message_at

    def compute_reconnect_delay(self, attempt: int) -> float:
        """
        Delay before reconnection attempt ``attempt`` (0-based).

        Returns:
            float: min(reconnect_interval_ms * 2 ** attempt, max_reconnect_delay_ms)
        """
        return float(
            min(
                self.config.reconnect_interval_ms * (2 ** attempt),
                self.config.max_reconnect_delay_ms,
            )
        )

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Open the channel.

        Returns immediately if already open. An explicit connect clears the
        manual-disconnect flag and supersedes any pending reconnect.

        Raises:
            ChannelBusyError: If a handshake or close is already in progress.
            ChannelConnectError: If the handshake fails. A reconnect is
                scheduled unless attempts are exhausted.
        """
        if self._state == ChannelState.OPEN:
            logger.debug("websocket_already_connected", url=self.url)
            return

        if self._state in (ChannelState.CONNECTING, ChannelState.CLOSING):
            raise ChannelBusyError(f"Connection transition in progress ({self._state.value})")

        self._manually_disconnected = False
        self._cancel_reconnect()
        await self._open()

    async def disconnect(self) -> None:
        """
        Close the channel and suppress automatic reconnection.

        Cancels the heartbeat and any pending reconnect. Safe to call
        multiple times and when not connected.
        """
        self._manually_disconnected = True
        await self._stop_reconnect()
        await self._stop_heartbeat()

        ws = self._ws
        if ws is None:
            return

        self._set_state(ChannelState.CLOSING)
        self._ws = None

        try:
            await ws.close(code=1000, reason="manual disconnect")
        except Exception as e:
            logger.warning("websocket_close_error", url=self.url, error=str(e))

        await self._cancel_task(self._reader_task)
        self._reader_task = None

        self._set_state(ChannelState.DISCONNECTED)
        logger.info("websocket_disconnected", url=self.url, manual=True)
        self._emit(ChannelEventType.CLOSED, detail={"manual": True})

    async def close(self) -> None:
        """Disconnect and drop every subscription and listener."""
        await self.disconnect()
        self._handlers.clear()
        self._listeners.clear()

    async def _open(self) -> None:
        self._set_state(ChannelState.CONNECTING)

        try:
            ws = await self._connector(
                self.url,
                ping_interval=None,  # Heartbeat is sent at the application level
                ping_timeout=None,
                close_timeout=self.config.close_timeout_seconds,
                max_size=2**20,
            )
        except asyncio.CancelledError:
            self._set_state(ChannelState.DISCONNECTED)
            raise
        except Exception as e:
            self._set_state(ChannelState.DISCONNECTED)
            logger.error(
                "websocket_connection_failed",
                url=self.url,
                error=str(e),
                reconnect_attempts=self._reconnect_attempts,
            )
            self._handle_unintended_close()
            raise ChannelConnectError(self.url, e) from e

        if self._manually_disconnected:
            # disconnect() arrived during the handshake
            try:
                await ws.close(code=1000, reason="manual disconnect")
            finally:
                self._set_state(ChannelState.DISCONNECTED)
            return

        self._ws = ws
        self._reconnect_attempts = 0
        self._set_state(ChannelState.OPEN)

        self._reader_task = asyncio.create_task(self._read(ws))
        self._heartbeat_task = asyncio.create_task(self._send_heartbeats(ws))

        logger.info("websocket_connected", url=self.url)
        self._emit(ChannelEventType.OPENED)

    async def _read(self, ws: Any) -> None:
        """Receive frames until the socket closes, then hand over to reconnection."""
        reason: Optional[str] = None
        try:
            async for raw in ws:
                self._last_message_at = datetime.now(timezone.utc)
                await self._dispatch_frame(raw)
        except ConnectionClosed as e:
            reason = str(e)
            logger.warning("websocket_connection_closed", url=self.url, reason=reason)
        except WebSocketException as e:
            reason = str(e)
            logger.error("websocket_error", url=self.url, error=reason)
        except Exception as e:
            reason = str(e)
            logger.error(
                "websocket_unexpected_error",
                url=self.url,
                error=reason,
                error_type=type(e).__name__,
            )

        await self._handle_socket_closed(ws, reason)

    async def _handle_socket_closed(self, ws: Any, reason: Optional[str]) -> None:
        if ws is not self._ws:
            return

        self._set_state(ChannelState.CLOSING)
        self._ws = None
        self._reader_task = None
        await self._stop_heartbeat()
        self._set_state(ChannelState.DISCONNECTED)

        logger.info("websocket_disconnected", url=self.url, manual=False, reason=reason)
        self._emit(ChannelEventType.CLOSED, detail={"manual": False, "reason": reason})

        self._handle_unintended_close()

    def _handle_unintended_close(self) -> None:
        if self._manually_disconnected:
            return

        if self._reconnect_attempts < self.config.max_reconnect_attempts:
            self._schedule_reconnect()
            return

        logger.error(
            "websocket_max_reconnect_exceeded",
            url=self.url,
            max_attempts=self.config.max_reconnect_attempts,
        )
        self._emit(ChannelEventType.RECONNECT_EXHAUSTED)

    # -------------------------------------------------------------------------
    # Reconnection
    # -------------------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        self._cancel_reconnect()
        delay_ms = self.compute_reconnect_delay(self._reconnect_attempts)

        logger.info(
            "websocket_reconnect_scheduled",
            url=self.url,
            attempt=self._reconnect_attempts + 1,
            max_attempts=self.config.max_reconnect_attempts,
            delay_ms=delay_ms,
        )
        self._emit(ChannelEventType.RECONNECT_SCHEDULED, delay_ms=delay_ms)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay_ms))

    async def _reconnect_after(self, delay_ms: float) -> None:
        await self._sleep(delay_ms / 1000.0)

        # Stays referenced through the handshake so disconnect() can cancel it.
        # A failed attempt replaces it with the next one.
        if self._manually_disconnected or self._state != ChannelState.DISCONNECTED:
            return

        self._reconnect_attempts += 1
        logger.info(
            "websocket_reconnecting",
            url=self.url,
            attempt=self._reconnect_attempts,
            max_attempts=self.config.max_reconnect_attempts,
        )

        try:
            await self._open()
        except ChannelConnectError:
            # Logged by _open, which has already scheduled the next attempt
            pass

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _stop_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        await self._cancel_task(task)

    # -------------------------------------------------------------------------
    # Heartbeat
    # -------------------------------------------------------------------------

    async def _send_heartbeats(self, ws: Any) -> None:
        """
        Send periodic ping messages while the socket stays open.

        No reply is awaited; a dead peer is detected by the socket closing.
        """
        interval = self.config.heartbeat_interval_ms / 1000.0
        try:
            while self._ws is ws and self._state == ChannelState.OPEN:
                await asyncio.sleep(interval)
                if self._ws is ws and self._state == ChannelState.OPEN:
                    await self.send(HEARTBEAT_TYPE, {"timestamp": now_ms()})
                    logger.debug("websocket_ping_sent", url=self.url)
        except asyncio.CancelledError:
            logger.debug("websocket_heartbeat_cancelled", url=self.url)

    async def _stop_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        await self._cancel_task(task)

    # -------------------------------------------------------------------------
    # Messaging
    # -------------------------------------------------------------------------

    async def send(self, message_type: str, data: Any = None) -> bool:
        """
        Send a message if the channel is open.

        Never raises; failures are logged and reported as False.

        Args:
            message_type: Envelope ``type``.
            data: Envelope ``data``.

        Returns:
            bool: True if the frame was handed to the socket.
        """
        ws = self._ws
        if self._state != ChannelState.OPEN or ws is None:
            logger.warning(
                "websocket_send_skipped",
                url=self.url,
                message_type=message_type,
                state=self._state.value,
            )
            return False

        try:
            frame = ChannelMessage(type=message_type, data=data).to_frame()
            await ws.send(frame)
        except Exception as e:
            logger.warning(
                "websocket_send_failed",
                url=self.url,
                message_type=message_type,
                error=str(e),
            )
            return False

        return True

    def subscribe(self, message_type: str, handler: MessageHandler) -> Callable[[], None]:
        """
        Register a handler for one message type.

        Handlers may be plain callables or coroutine functions. The same
        handler may be registered more than once; each registration is
        removed independently.

        Args:
            message_type: Exact envelope ``type`` to match.
            handler: Called with the ChannelMessage.

        Returns:
            Callable[[], None]: Removes this registration only.
        """
        token = next(self._tokens)
        self._handlers.setdefault(message_type, {})[token] = handler
        logger.debug("websocket_handler_subscribed", message_type=message_type)

        def unsubscribe() -> None:
            handlers = self._handlers.get(message_type)
            if handlers is None or token not in handlers:
                return
            del handlers[token]
            if not handlers:
                del self._handlers[message_type]

        return unsubscribe

    def subscription_count(self, message_type: Optional[str] = None) -> int:
        """Number of registrations, for one type or overall."""
        if message_type is not None:
            return len(self._handlers.get(message_type, {}))
        return sum(len(handlers) for handlers in self._handlers.values())

    def subscribed_types(self) -> list[str]:
        return list(self._handlers)

    async def dispatch(self, message: ChannelMessage) -> int:
        """
        Deliver a message to every handler registered for its type.

        A handler that raises is logged and skipped; the remaining handlers
        still run.

        Returns:
            int: Number of handlers that completed without error.
        """
        self._emit(ChannelEventType.MESSAGE_RECEIVED, message=message)

        handlers = list(self._handlers.get(message.type, {}).values())
        if not handlers:
            logger.debug("websocket_message_unhandled", message_type=message.type)
            return 0

        delivered = 0
        for handler in handlers:
            try:
                outcome = handler(message)
                if inspect.isawaitable(outcome):
                    await outcome
                delivered += 1
            except Exception as e:
                failure = HandlerFailure(message.type, e)
                logger.error(
                    "websocket_handler_failed",
                    message_type=message.type,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                self._emit(
                    ChannelEventType.HANDLER_FAILED,
                    message=message,
                    detail={"error": str(failure)},
                )

        return delivered

    async def _dispatch_frame(self, raw: Any) -> None:
        try:
            message = ChannelMessage.parse_frame(raw)
        except MalformedMessageError as e:
            logger.warning(
                "websocket_invalid_message",
                url=self.url,
                reason=e.reason,
                message=e.raw,
            )
            return

        await self.dispatch(message)

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def add_listener(self, listener: ChannelListener) -> Callable[[], None]:
        """
        Subscribe to channel lifecycle events.

        Returns:
            Callable[[], None]: Removes the listener.
        """
        token = next(self._tokens)
        self._listeners[token] = listener

        def remove() -> None:
            self._listeners.pop(token, None)

        return remove

    def _emit(
        self,
        event_type: ChannelEventType,
        delay_ms: Optional[float] = None,
        message: Optional[ChannelMessage] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self._listeners:
            return

        event = ChannelEvent(
            type=event_type,
            state=self._state,
            reconnect_attempts=self._reconnect_attempts,
            delay_ms=delay_ms,
            message=message,
            detail=detail or {},
        )
        for listener in list(self._listeners.values()):
            try:
                listener(event)
            except Exception as e:
                logger.error(
                    "websocket_listener_failed",
                    event_type=event_type.value,
                    error=str(e),
                )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _set_state(self, state: ChannelState) -> None:
        if state != self._state:
            logger.debug(
                "websocket_state_changed",
                url=self.url,
                previous=self._state.value,
                state=state.value,
            )
            self._state = state

    @staticmethod
    async def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug("websocket_task_cancel_error", error=str(e))

    def __repr__(self) -> str:
        """Return string representation."""
        return (
            f"PushChannelClient(url={self.url}, "
            f"state={self._state.value}, "
            f"reconnect_attempts={self._reconnect_attempts})"
        )
