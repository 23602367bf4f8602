"""
Database engine and session factory.

The pipeline writes with a service role: there is no per-request tenant
context, and each store operation opens its own short session so a
rejected chunk row or entity batch cannot poison another unit's
transaction. The engine is built on first use, which keeps importing the
stores free of any connection settings.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from casefile_ingest.core.config import settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    logger.debug(
        "Creating database engine | pool_size=%d max_overflow=%d",
        settings.db_pool_size, settings.db_max_overflow,
    )
    return create_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
        echo=settings.db_echo_sql,
    )


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Sessions keep loaded rows usable after commit; stores copy them into plain records."""
    return async_sessionmaker(
        bind=get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def dispose_engine() -> None:
    if get_engine.cache_info().currsize:
        await get_engine().dispose()
        get_session_factory.cache_clear()
        get_engine.cache_clear()


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_db_health() -> dict:
    """
    Ping the database and confirm the pgvector extension is installed.

    Similarity search and chunk inserts both need the `vector` type, so a
    reachable database without it is reported as an error.
    """
    try:
        async with get_engine().connect() as conn:
            has_vector = await conn.scalar(
                text("SELECT EXISTS (SELECT 1 FROM pg_extension WHERE extname = 'vector')")
            )
    except Exception as exc:
        logger.error("DB health check failed | error=%s", exc)
        return {"status": "error", "detail": str(exc)}

    if not has_vector:
        logger.error("DB health check failed | pgvector extension missing")
        return {"status": "error", "detail": "pgvector extension is not installed"}
    return {"status": "ok", "pgvector": True}
