"""ASGI entrypoint for running the service."""
from __future__ import annotations

import logging

import uvicorn

from .config import Settings, get_settings


def configure_logging(settings: Settings) -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    root_logger.addHandler(handler)


def run() -> None:
    """Convenience wrapper used by ``python -m stock_planner.main``."""

    settings = get_settings()
    configure_logging(settings)
    uvicorn.run(
        "stock_planner.api:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
