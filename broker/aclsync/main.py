"""
mosquitto-sync - Main entry point.

This module starts the HTTP API over BrokerSync and, on shutdown, stops a
broker that this process started.

Usage:
    python -m broker.aclsync.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Configuration errors exit with status 1 before anything is written
    - Shutdown never kills a broker this process did not start
"""

from __future__ import annotations

import logging
import sys

import json_log_formatter
import uvicorn

from .api import create_http_app
from .config import ServerConfig

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    config.log_config()

    app = create_http_app(config=config)
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=config.http.host,
            port=config.http.port,
            log_config=None,
        )
    )

    logger.info(f"mosquitto-sync listening on http://{config.http.host}:{config.http.port}")
    server.run()


if __name__ == "__main__":
    main()
