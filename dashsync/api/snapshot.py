"""
Snapshot API endpoints.

Provides:
    GET  /api/snapshot          - Current metric snapshot
    POST /api/refresh           - Full refresh of every metric
    POST /api/refresh/{metric}  - Targeted refresh of one metric
"""

from fastapi import APIRouter, Depends, HTTPException

import structlog

from dashsync.api.app import AppState, get_app_state
from dashsync.errors import UnknownMetricError
from dashsync.models.snapshot import MetricSlot, SyncSnapshot

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get(
    "/snapshot",
    response_model=SyncSnapshot,
    summary="Get the metric snapshot",
    description="Returns every metric's last good value, freshness and availability.",
)
async def get_snapshot(state: AppState = Depends(get_app_state)) -> SyncSnapshot:
    return state.agent.coordinator.snapshot()


@router.post(
    "/refresh",
    response_model=SyncSnapshot,
    summary="Refresh every metric",
    description="Fetches all metrics concurrently and waits for every fetch to settle.",
)
async def refresh_all(state: AppState = Depends(get_app_state)) -> SyncSnapshot:
    """
    Run a full refresh.

    Returns:
        SyncSnapshot: Snapshot after the refresh. ``error`` reports how
        many metrics failed.
    """
    return await state.agent.coordinator.refresh()


@router.post(
    "/refresh/{metric}",
    response_model=MetricSlot,
    summary="Refresh one metric",
)
async def refresh_metric(metric: str, state: AppState = Depends(get_app_state)) -> MetricSlot:
    """
    Run a targeted refresh.

    Args:
        metric: Metric key (e.g., "quick_stats").

    Returns:
        MetricSlot: The metric's slot after the refresh.

    Raises:
        HTTPException: 404 if the metric is unknown, 503 if the agent is
            shutting down.
    """
    try:
        slot = await state.agent.coordinator.refresh_metric(metric)
    except UnknownMetricError as e:
        raise HTTPException(status_code=404, detail=str(e))

    if slot is None:
        raise HTTPException(status_code=503, detail="Agent is shutting down")

    logger.debug("api_metric_refreshed", metric=metric, available=slot.is_available)
    return slot
