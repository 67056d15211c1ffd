"""
Database connection management.
Handles async SQLAlchemy engine and session creation.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from queuectl.config import get_settings
from queuectl.db.models import Base
from queuectl.exceptions import StoreUnavailable

logger = logging.getLogger(__name__)

# Global engine instance
_engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def _configure_sqlite(engine: AsyncEngine) -> None:
    """
    Make SQLite safe for concurrent writers.

    Disables the driver's implicit BEGIN and emits BEGIN IMMEDIATE instead,
    so every transaction takes the write lock up front and concurrent
    claims queue on the busy timeout rather than failing on lock upgrade.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def _build_engine(database_url: str, **kwargs) -> AsyncEngine:
    settings = get_settings()
    if database_url.startswith("sqlite"):
        kwargs.setdefault(
            "connect_args",
            {"timeout": settings.sqlite_busy_timeout_seconds},
        )
    engine = create_async_engine(database_url, **kwargs)
    if database_url.startswith("sqlite"):
        _configure_sqlite(engine)
    return engine


def get_engine() -> AsyncEngine:
    """
    Get or create the async database engine.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        kwargs = {
            "echo": settings.log_level == "DEBUG",
            "pool_pre_ping": True,
        }
        if not settings.is_sqlite:
            kwargs["pool_size"] = settings.database_pool_size
            kwargs["max_overflow"] = settings.database_max_overflow
        _engine = _build_engine(settings.database_url, **kwargs)
    return _engine


def get_test_engine(database_url: str) -> AsyncEngine:
    """
    Create a test database engine with NullPool.

    Args:
        database_url: The database URL for testing.

    Returns:
        AsyncEngine: The test SQLAlchemy async engine instance.
    """
    return _build_engine(database_url, poolclass=NullPool, echo=False)


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db(database_url: str | None = None) -> None:
    """
    Initialize the database connection, session factory and schema.
    Should be called on application startup.

    Args:
        database_url: Optional URL overriding the configured one.
    """
    global _engine, AsyncSessionLocal
    if database_url is not None:
        if _engine is not None:
            await _engine.dispose()
        _engine = get_test_engine(database_url)
    engine = get_engine()
    AsyncSessionLocal = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    try:
        await create_schema(engine)
    except (OperationalError, InterfaceError, OSError) as e:
        raise StoreUnavailable(f"Cannot initialize database: {e}") from e
    logger.info("Database connection initialized")


async def close_db() -> None:
    """
    Close the database connection.
    Should be called on application shutdown.
    """
    global _engine, AsyncSessionLocal
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        AsyncSessionLocal = None
        logger.info("Database connection closed")


async def get_async_session() -> AsyncGenerator[AsyncSession]:
    """
    Dependency for getting async database sessions.

    Yields:
        AsyncSession: An async database session.

    Raises:
        RuntimeError: If the database is not initialized.
    """
    async with get_session_context() as session:
        yield session


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession]:
    """
    Context manager for getting async database sessions.
    Commits on success, rolls back on error, and reports connectivity
    problems as StoreUnavailable.

    Yields:
        AsyncSession: An async database session.
    """
    if AsyncSessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except (OperationalError, InterfaceError) as e:
            await session.rollback()
            raise StoreUnavailable(f"Job store unavailable: {e.orig or e}") from e
        except Exception:
            await session.rollback()
            raise
