"""
API service entrypoint.
Runs the FastAPI application via uvicorn. PORT, when set by the platform, wins
over the configured port.
"""
from __future__ import annotations

import os

import uvicorn

from shared.config import get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)


def main() -> None:
    """Start the API service."""
    settings = get_settings()
    port = int(os.environ.get("PORT", settings.api_port))

    # The scheduler and the WebSocket topic table live in-process.
    if settings.api_workers != 1:
        logger.warning("api_workers_forced_single", configured=settings.api_workers)

    uvicorn.run(
        "api.app:app",
        host=settings.api_host,
        port=port,
        workers=1,
        log_level=settings.log_level.lower(),
        access_log=False,
        ws_ping_interval=settings.ws_heartbeat_interval_s,
        ws_ping_timeout=settings.ws_heartbeat_timeout_s,
        timeout_keep_alive=30,
    )


if __name__ == "__main__":
    main()
