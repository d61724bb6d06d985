"""
Database session management for async SQLAlchemy operations.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlmodel import SQLModel

from ..config.settings import settings

logger = logging.getLogger(__name__)


def _engine_options(database_url: str) -> dict:
    """Engine keyword arguments for the configured driver."""
    if database_url.startswith("postgresql+asyncpg"):
        return {
            "pool_size": 10,
            "max_overflow": 20,
            "pool_pre_ping": True,   # Detect stale connections before use
            "pool_recycle": 3600,    # Recycle connections every hour
            "pool_timeout": 30,      # Wait max 30s for connection from pool
            "connect_args": {
                "command_timeout": 30,  # Timeout for individual queries (asyncpg)
                "server_settings": {
                    "statement_timeout": "30000",  # PostgreSQL statement timeout (ms)
                },
            },
        }
    return {}


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def get_engine() -> AsyncEngine:
    """Create the engine on first use so the memory backend never needs a driver."""
    global _engine
    if _engine is None:
        _engine = create_async_engine(
            settings.database_url,
            echo=False,
            **_engine_options(settings.database_url),
        )
    return _engine


def get_session_factory() -> async_sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


async def init_db(engine: Optional[AsyncEngine] = None):
    """Initialize database tables."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def close_db():
    """Close database connections."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def get_pool_status() -> dict:
    """Connection pool counters for the health endpoint."""
    pool = get_engine().pool
    checked_out = pool.checkedout() if hasattr(pool, "checkedout") else 0
    checked_in = pool.checkedin() if hasattr(pool, "checkedin") else 0
    return {
        "pool_size": pool.size() if hasattr(pool, "size") else 0,
        "checked_in": checked_in,
        "checked_out": checked_out,
        "total_connections": checked_in + checked_out,
    }


@asynccontextmanager
async def get_session(
    session_factory: Optional[async_sessionmaker] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Get an async database session.

    Commits when the block exits cleanly, rolls back and re-raises otherwise.
    """
    factory = session_factory or get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.error(f"Database session error, rolling back: {e}")
            await session.rollback()
            raise
