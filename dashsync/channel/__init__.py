"""
Push channel.

A single reconnecting WebSocket connection shared by every consumer in the
process. Consumers multiplex it with ``subscribe(type, handler)``.

Example:
    >>> from dashsync.channel import PushChannelClient
"""

from dashsync.channel.push_client import (
    HEARTBEAT_TYPE,
    ChannelListener,
    MessageHandler,
    PushChannelClient,
)

__all__: list[str] = [
    "HEARTBEAT_TYPE",
    "ChannelListener",
    "MessageHandler",
    "PushChannelClient",
]
