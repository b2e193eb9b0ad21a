"""
FastAPI application for the dashboard sync agent.

This module creates and configures the FastAPI application with:
- CORS configuration for the dashboard front end
- Router registration for the read model and control endpoints
- Lifespan events that start and stop the SyncAgent

Endpoints:
    GET  /api/snapshot              Current metric snapshot
    POST /api/refresh               Full refresh (settle-all)
    POST /api/refresh/{metric}      Targeted refresh
    GET  /api/tasks                 Scheduler tasks
    GET  /api/tasks/{task_id}       One task
    PATCH /api/tasks/{task_id}      Reconfigure (re-enable) a task
    POST /api/tasks/{task_id}/run   Run a task now
    GET  /api/channel               Push channel state
    POST /api/channel/connect       Open the push channel
    POST /api/channel/disconnect    Close the push channel
    POST /api/liveness              Report dashboard visibility
    GET  /api/health                Agent, polling and channel status
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from dashsync.agent import SyncAgent
from dashsync.config.models import AppConfig

logger = structlog.get_logger(__name__)


class AppState:
    """
    Application state container.

    Holds the SyncAgent started during application startup and stopped on
    shutdown.
    """

    def __init__(self, agent: SyncAgent):
        self.agent = agent
        self.start_time: datetime = datetime.now(timezone.utc)


def get_app_state(request: Request) -> AppState:
    """FastAPI dependency returning the state attached by create_app()."""
    return request.app.state.sync


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Manage application lifespan events.

    Starts the agent on startup and tears it down on shutdown, so timers,
    sockets and HTTP sessions never outlive the server.

    Args:
        app: FastAPI application instance.

    Yields:
        None: Control flow returns to the application.
    """
    state: AppState = app.state.sync
    logger.info("api_starting")

    await state.agent.start()
    state.start_time = datetime.now(timezone.utc)
    logger.info("api_ready")

    yield

    logger.info("api_shutting_down")
    try:
        await state.agent.stop()
    except Exception as e:
        logger.error("agent_stop_error", error=str(e), error_type=type(e).__name__)
    logger.info("api_shutdown_complete")


def create_app(
    agent: Optional[SyncAgent] = None,
    config: Optional[AppConfig] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        agent: Agent to serve. Built from ``config`` when omitted.
        config: Configuration used when no agent is given.

    Returns:
        FastAPI: Configured FastAPI application instance.

    Example:
        >>> app = create_app(config=load_config("config"))
        >>> uvicorn.run(app, host="127.0.0.1", port=8060)
    """
    if agent is None:
        agent = SyncAgent(config or AppConfig())

    app = FastAPI(
        title="Dashboard Sync Agent",
        description="Polling and push synchronisation for dashboard metrics",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.sync = AppState(agent)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    from dashsync.api.channel import router as channel_router
    from dashsync.api.health import router as health_router
    from dashsync.api.snapshot import router as snapshot_router
    from dashsync.api.tasks import router as tasks_router

    app.include_router(snapshot_router, prefix="/api", tags=["Snapshot"])
    app.include_router(tasks_router, prefix="/api", tags=["Tasks"])
    app.include_router(channel_router, prefix="/api", tags=["Channel"])
    app.include_router(health_router, prefix="/api", tags=["Health"])

    logger.info("fastapi_app_created")

    return app
