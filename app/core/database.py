from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from app.config import settings
from app.models import records  # noqa: F401 - ensure tables are registered on the metadata

logger = logging.getLogger(__name__)

# Global variables for database
engine: AsyncEngine | None = None
async_session: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine | None:
    """Create the engine on first use; None when no DATABASE_URL is configured."""
    global engine, async_session

    if engine is not None or not settings.database_url:
        return engine

    engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
        pool_pre_ping=True,
        pool_recycle=300,
    )
    async_session = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return engine


def get_session_factory() -> async_sessionmaker[AsyncSession] | None:
    get_engine()
    return async_session


async def init_database():
    """Initialize database connection if DATABASE_URL is provided."""
    if not settings.database_url:
        logger.info("No DATABASE_URL provided, running without database")
        return

    try:
        db_engine = get_engine()
        if settings.db_auto_create_schema and db_engine is not None:
            async with db_engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)
            logger.info("Database schema ensured")

        logger.info("Database connection initialized successfully")

    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


async def close_database() -> None:
    global engine, async_session

    if engine is not None:
        await engine.dispose()
    engine = None
    async_session = None


async def check_database_health() -> bool:
    """Check if database is accessible."""
    if not engine:
        return True  # No database configured, consider healthy

    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False
