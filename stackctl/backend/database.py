"""Async database engine for the SQL home provider."""

from __future__ import annotations

import structlog
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from stackctl.backend.models import Base

logger = structlog.get_logger()


def create_db_engine(url: str) -> AsyncEngine:
    """Create an async SQLAlchemy engine (e.g. sqlite+aiosqlite, postgresql+asyncpg)."""
    parsed = make_url(url)
    engine = create_async_engine(url, pool_pre_ping=parsed.get_backend_name() != "sqlite")
    logger.info(
        "db_engine_created",
        backend=parsed.get_backend_name(),
        host=parsed.host,
        database=parsed.database,
    )
    return engine


async def ensure_schema(engine: AsyncEngine) -> None:
    """Create the home provider tables if they do not exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("db_schema_ensured")
