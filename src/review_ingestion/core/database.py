"""
Database configuration and session management
"""
from functools import lru_cache
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .config import settings
from .logging import get_logger

logger = get_logger(__name__)

# Create base class for declarative models
Base = declarative_base()


@lru_cache()
def get_engine() -> AsyncEngine:
    """Create the async engine on first use"""
    options = {"echo": settings.DB_ECHO, "pool_pre_ping": True}
    if not settings.DATABASE_URL.startswith("sqlite"):
        options.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_recycle=3600,
        )
    return create_async_engine(settings.DATABASE_URL, **options)


@lru_cache()
def get_session_factory() -> async_sessionmaker:
    return async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Database dependency for FastAPI

    Yields:
        SQLAlchemy async session
    """
    async with get_session_factory()() as session:
        yield session


async def init_db() -> None:
    """Initialize database - create all tables"""
    # Register models on Base.metadata
    from ..models import database  # noqa: F401

    logger.info("Initializing database")
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database initialized successfully")


async def close_db() -> None:
    """Close database connections"""
    logger.info("Closing database connections")
    await get_engine().dispose()
    logger.info("Database connections closed")
