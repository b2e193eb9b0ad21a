"""
Health and liveness API endpoints.

Provides:
    GET  /api/health    - Agent status: snapshot freshness, polling, channel
    POST /api/liveness  - Dashboard reports whether it is visible

A hidden dashboard pauses every polling task; becoming visible again
reschedules them.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from pydantic import BaseModel

import structlog

from dashsync.api.app import AppState, get_app_state
from dashsync.models.snapshot import CoordinatorStatus

logger = structlog.get_logger(__name__)

router = APIRouter()


class HealthResponse(BaseModel):
    """Response model for health endpoint."""

    status: str = "unknown"
    coordinator: CoordinatorStatus
    visible: bool = True
    uptime_seconds: int = 0
    timestamp: str

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "degraded",
                "coordinator": {
                    "alive": True,
                    "loading": False,
                    "error": "2 failed",
                    "unavailable": ["lead_metrics", "financial_metrics"],
                    "polling": {
                        "is_active": True,
                        "last_update": "2026-01-26T12:34:50Z",
                        "error_count": 2,
                        "tasks": {},
                    },
                    "channel_state": "open",
                    "channel_connected": True,
                },
                "visible": True,
                "uptime_seconds": 15780,
                "timestamp": "2026-01-26T12:34:57Z",
            }
        }
    }


class LivenessRequest(BaseModel):
    """Visibility report from the dashboard front end."""

    visible: bool


class LivenessResponse(BaseModel):
    visible: bool
    scheduler_paused: bool


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Get agent health",
    description="Reports snapshot availability, polling activity and push channel state.",
)
async def get_health(state: AppState = Depends(get_app_state)) -> HealthResponse:
    """
    Get agent health.

    Status is ``healthy`` when every metric is available, ``degraded`` when
    some are not, and ``stopped`` after shutdown.

    Returns:
        HealthResponse: Agent health.
    """
    agent = state.agent
    coordinator_status = agent.coordinator.status()

    if not coordinator_status.alive:
        status = "stopped"
    elif coordinator_status.unavailable:
        status = "degraded"
    else:
        status = "healthy"

    now = datetime.now(timezone.utc)
    return HealthResponse(
        status=status,
        coordinator=coordinator_status,
        visible=agent.liveness.is_visible,
        uptime_seconds=int((now - state.start_time).total_seconds()),
        timestamp=now.isoformat().replace("+00:00", "Z"),
    )


@router.post(
    "/liveness",
    response_model=LivenessResponse,
    summary="Report dashboard visibility",
)
async def set_liveness(
    request: LivenessRequest,
    state: AppState = Depends(get_app_state),
) -> LivenessResponse:
    agent = state.agent
    agent.liveness.set_visible(request.visible)
    logger.debug("api_liveness_reported", visible=request.visible)
    return LivenessResponse(
        visible=agent.liveness.is_visible,
        scheduler_paused=agent.scheduler.is_paused,
    )
