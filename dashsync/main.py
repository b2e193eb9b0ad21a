"""
Sync agent entry point.

Loads configuration, configures structured logging and serves the agent's
API with Uvicorn. The agent itself starts and stops with the application
lifespan.

Usage:
    dashsync-agent

    Or as a module:
    python -m dashsync.main

Environment Variables:
    DASHSYNC_CONFIG_DIR: Configuration directory (default: config)
    DASHSYNC_CHANNEL_URL: Push channel URL override
    DASHSYNC_API_BASE_URL: Metric API base URL override
    LOG_LEVEL: Logging level override
"""

import logging
import os
import sys

import structlog
import uvicorn

from dashsync.api.app import create_app
from dashsync.config.loader import ConfigLoadError, load_config
from dashsync.config.models import LogFormat, LoggingConfig


def setup_logging(config: LoggingConfig) -> None:
    """
    Configure structlog over standard logging.

    Args:
        config: Level and output format (JSON lines or console text).
    """
    renderer = (
        structlog.processors.JSONRenderer()
        if config.format == LogFormat.JSON
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, config.level.value),
    )

    # Reduce noise from uvicorn access logs and websockets frames
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)


def main() -> None:
    """
    Main entry point for the sync agent.

    Exits with status 1 if the configuration cannot be loaded.
    """
    config_dir = os.getenv("DASHSYNC_CONFIG_DIR", "config")

    try:
        config = load_config(config_dir)
    except ConfigLoadError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config.logging)

    logger = structlog.get_logger(__name__)
    logger.info(
        "sync_agent_service_starting",
        version="1.0.0",
        python_version=sys.version,
        config_dir=config_dir,
        host=config.api.host,
        port=config.api.port,
    )

    uvicorn.run(
        create_app(config=config),
        host=config.api.host,
        port=config.api.port,
        log_level=config.logging.level.value.lower(),
        access_log=False,
    )


if __name__ == "__main__":
    main()
