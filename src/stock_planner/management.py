"""Utility helpers for administrative tasks."""
from __future__ import annotations

import asyncio

from sqlalchemy.ext.asyncio import AsyncEngine

from . import models  # noqa: F401  registers the tables on Base.metadata
from .database import Base, create_engine


async def init_database(db_engine: AsyncEngine | None = None) -> None:
    """Create the backing-store tables."""

    engine_to_use = db_engine or create_engine()
    try:
        async with engine_to_use.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    finally:
        if db_engine is None:
            await engine_to_use.dispose()


def cli_init_database() -> None:
    """CLI wrapper executed from :mod:`python -m`."""

    asyncio.run(init_database())


if __name__ == "__main__":
    cli_init_database()
