"""
Tutor scheduler entry point.

Runs the HTTP API (turn + session endpoints) or the offline console demo.

Usage:
    API server:   python main.py serve
    Console mode: python main.py console [--scenario booking|others|interrupt]
"""

import logging
import sys

from tutor_scheduler.config import settings

logger = logging.getLogger(__name__)


def _run_server() -> None:
    """Start the FastAPI app under uvicorn."""
    import uvicorn

    from tutor_scheduler.api.server import create_app

    logger.info("Starting API on %s:%d", settings.api_host, settings.api_port)
    uvicorn.run(
        create_app(),
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


def _run_console_mode() -> None:
    """Start the offline console demo (no API keys required)."""
    import console_demo

    console_demo.main(sys.argv[2:])


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "console":
        _run_console_mode()
    else:
        _run_server()
