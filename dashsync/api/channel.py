"""
Push channel API endpoints.

Provides:
    GET  /api/channel             - Push channel state
    POST /api/channel/connect     - Open the push channel
    POST /api/channel/disconnect  - Close it and stop reconnecting

Connecting makes push events a live update path. Per the arbitration
notes in CoordinatorConfig, polling and auto-refresh keep running unless
they are disabled in configuration.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

import structlog

from dashsync.api.app import AppState, get_app_state
from dashsync.channel.push_client import PushChannelClient

logger = structlog.get_logger(__name__)

router = APIRouter()


class ChannelStatusResponse(BaseModel):
    """Push channel state as seen by the coordinator."""

    url: str
    state: str
    connected: bool
    reconnect_attempts: int = 0
    error: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "url": "ws://localhost:8080/ws",
                "state": "open",
                "connected": True,
                "reconnect_attempts": 0,
                "error": None,
            }
        }
    }


def _require_channel(state: AppState) -> PushChannelClient:
    channel = state.agent.channel
    if channel is None:
        raise HTTPException(status_code=409, detail="Push channel is disabled")
    return channel


def _channel_status(state: AppState, channel: PushChannelClient) -> ChannelStatusResponse:
    return ChannelStatusResponse(
        url=channel.url,
        state=channel.state.value,
        connected=channel.is_connected,
        reconnect_attempts=channel.reconnect_attempts,
        error=state.agent.coordinator.status().channel_error,
    )


@router.get(
    "/channel",
    response_model=ChannelStatusResponse,
    summary="Get push channel state",
)
async def get_channel(state: AppState = Depends(get_app_state)) -> ChannelStatusResponse:
    return _channel_status(state, _require_channel(state))


@router.post(
    "/channel/connect",
    response_model=ChannelStatusResponse,
    summary="Connect the push channel",
    description="A failed handshake is reported in `error`; reconnection continues in the background.",
)
async def connect_channel(state: AppState = Depends(get_app_state)) -> ChannelStatusResponse:
    """
    Connect the push channel through the coordinator.

    Raises:
        HTTPException: 409 if the agent runs without a push channel.
    """
    channel = _require_channel(state)
    connected = await state.agent.coordinator.connect()
    logger.info("api_channel_connect", connected=connected)
    return _channel_status(state, channel)


@router.post(
    "/channel/disconnect",
    response_model=ChannelStatusResponse,
    summary="Disconnect the push channel",
)
async def disconnect_channel(state: AppState = Depends(get_app_state)) -> ChannelStatusResponse:
    channel = _require_channel(state)
    await channel.disconnect()
    logger.info("api_channel_disconnect")
    return _channel_status(state, channel)
