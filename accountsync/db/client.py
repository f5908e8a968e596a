"""
PostgreSQL Async Database Client

SQLAlchemy 2.0 async sessions for the record, checkpoint and account stores,
plus a raw asyncpg pool for the job queue and lock table.
"""

import json
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import asyncpg
import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from accountsync.config import get_settings

logger = structlog.get_logger()

# Global engine and session factory
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
_pool: asyncpg.Pool | None = None


async def init_db() -> None:
    """Initialize the database connection pool."""
    global _engine, _session_factory

    settings = get_settings()
    database_url = str(settings.database_url)

    _engine = create_async_engine(
        database_url,
        echo=settings.log_level == "DEBUG",
        pool_size=max(1, int(settings.db_pool_size)),
        max_overflow=max(0, int(settings.db_pool_max_overflow)),
        pool_pre_ping=True,
    )
    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    logger.info("Database connection pool initialized", url=database_url[:50] + "...")


async def close_db() -> None:
    """Close the database connection pool."""
    global _engine, _session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connection pool closed")


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Get an async database session.

    Usage:
        async with get_db_session() as session:
            result = await session.execute(...)
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    session = _session_factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def _init_connection(conn: asyncpg.Connection) -> None:
    # Pass dicts straight through for json/jsonb columns.
    await conn.set_type_codec("json", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")
    await conn.set_type_codec(
        "jsonb",
        encoder=json.dumps,
        decoder=json.loads,
        schema="pg_catalog",
        format="text",
    )


async def get_db_pool() -> asyncpg.Pool:
    """Get an asyncpg connection pool for raw SQL queries."""
    global _pool
    if _pool is None:
        settings = get_settings()
        db_url = str(settings.database_url).replace("postgresql+asyncpg://", "postgresql://")
        min_size = max(1, int(settings.db_raw_pool_min_size))
        _pool = await asyncpg.create_pool(
            db_url,
            init=_init_connection,
            min_size=min_size,
            max_size=max(min_size, int(settings.db_raw_pool_max_size)),
        )
    return _pool


async def close_db_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
