"""
Push channel models.

Models:
    ChannelState: Connection state machine
    ChannelMessage: Wire envelope {type, data, timestamp}
    ChannelEvent: Lifecycle record emitted to channel listeners
"""

import json
import time
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError

from dashsync.errors import MalformedMessageError


class ChannelState(str, Enum):
    """
    Push channel connection state.

    Transitions:
        DISCONNECTED -> CONNECTING (connect called)
        CONNECTING -> OPEN (handshake ok) | DISCONNECTED (handshake failed)
        OPEN -> CLOSING -> DISCONNECTED (manual or peer close)
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"

    @property
    def is_open(self) -> bool:
        return self == ChannelState.OPEN


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class ChannelMessage(BaseModel):
    """
    Push channel wire envelope.

    Attributes:
        type: Dispatch key. Handlers are matched on this value exactly.
        data: Arbitrary payload.
        timestamp: Sender time in epoch milliseconds.

    Example:
        >>> msg = ChannelMessage.parse_frame('{"type": "pong", "data": {}, "timestamp": 1}')
        >>> msg.type
        'pong'
    """

    model_config = {"frozen": True}

    type: str = Field(..., description="Dispatch key", min_length=1)
    data: Any = Field(default=None, description="Message payload")
    timestamp: int = Field(
        default_factory=now_ms,
        description="Sender time in epoch milliseconds",
        ge=0,
    )

    @property
    def subtype(self) -> Optional[str]:
        """The ``data.type`` field, used to route dashboard updates."""
        if isinstance(self.data, dict):
            value = self.data.get("type")
            return value if isinstance(value, str) else None
        return None

    def to_frame(self) -> str:
        """Serialize to a JSON text frame."""
        return json.dumps(self.model_dump(mode="json"))

    @classmethod
    def parse_frame(cls, raw: str | bytes) -> "ChannelMessage":
        """
        Parse a text or binary frame into an envelope.

        Args:
            raw: Frame payload as received from the socket.

        Returns:
            ChannelMessage: Parsed envelope. A missing timestamp is filled
            with the receive time.

        Raises:
            MalformedMessageError: If the frame is not JSON, not an object,
                or has no string ``type``.
        """
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedMessageError(f"invalid JSON: {e}", raw=text[:100]) from e

        if not isinstance(payload, dict):
            raise MalformedMessageError("envelope is not an object", raw=text[:100])

        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise MalformedMessageError(
                f"invalid envelope: {e.errors()[0]['msg']}", raw=text[:100]
            ) from e


class ChannelEventType(str, Enum):
    """Channel lifecycle event kinds."""

    OPENED = "opened"
    CLOSED = "closed"
    MESSAGE_RECEIVED = "message_received"
    RECONNECT_SCHEDULED = "reconnect_scheduled"
    RECONNECT_EXHAUSTED = "reconnect_exhausted"
    HANDLER_FAILED = "handler_failed"


class ChannelEvent(BaseModel):
    """Lifecycle record emitted by the push channel client."""

    model_config = {"frozen": True}

    type: ChannelEventType
    state: ChannelState
    reconnect_attempts: int = 0
    delay_ms: Optional[float] = None
    message: Optional[ChannelMessage] = None
    detail: Dict[str, Any] = Field(default_factory=dict)
