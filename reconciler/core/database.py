"""Database configuration and session management."""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from reconciler.core.config import get_settings
from reconciler.core.exceptions import TransientStoreError

logger = structlog.get_logger()

# Connectivity failures that are worth retrying
TRANSIENT_STORE_ERRORS = (
    OperationalError,
    InterfaceError,
    DisconnectionError,
    TimeoutError,
    ConnectionError,
    OSError,
)

# Lazy initialization
_engine = None
_async_session_factory = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        engine_kwargs = {
            "echo": settings.DB_ECHO,
            "future": True,
        }

        if "sqlite" in settings.database_url_async:
            # For SQLite, use StaticPool without pool size parameters
            engine_kwargs["poolclass"] = StaticPool
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        else:
            # For PostgreSQL, use pool settings
            engine_kwargs["pool_size"] = settings.DB_POOL_SIZE
            engine_kwargs["max_overflow"] = settings.DB_MAX_OVERFLOW
            engine_kwargs["pool_pre_ping"] = settings.DB_POOL_PRE_PING
            engine_kwargs["pool_recycle"] = settings.DB_POOL_RECYCLE
            engine_kwargs["pool_timeout"] = settings.DB_POOL_TIMEOUT

        _engine = create_async_engine(
            settings.database_url_async,
            **engine_kwargs
        )
    return _engine


def get_session_factory() -> async_sessionmaker:
    """Get or create the async session factory."""
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session_factory


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


@asynccontextmanager
async def transaction(session_factory: async_sessionmaker) -> AsyncIterator[AsyncSession]:
    """Open a session with a single transaction around the block.

    The transaction commits when the block exits normally and rolls back
    on any exception. Connectivity failures surface as TransientStoreError.
    """
    try:
        async with session_factory() as session:
            async with session.begin():
                yield session
    except TRANSIENT_STORE_ERRORS as e:
        raise TransientStoreError(f"Database operation failed: {e}") from e


async def check_connection(session_factory: Optional[async_sessionmaker] = None) -> bool:
    """Return True when the database answers a trivial query."""
    factory = session_factory or get_session_factory()
    try:
        async with factory() as session:
            await session.execute(text("SELECT 1"))
        return True
    except TRANSIENT_STORE_ERRORS as e:
        logger.warning("Database connection check failed", error=str(e))
        return False


async def init_db() -> None:
    """Initialize database."""
    try:
        # Import all models here to ensure they are registered
        from reconciler import models  # noqa: F401

        async with get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error("Failed to initialize database", error=str(e))
        raise


async def close_db() -> None:
    """Close database connections."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
    logger.info("Database connections closed")
