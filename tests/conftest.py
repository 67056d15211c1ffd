"""
Pytest configuration and shared fixtures.
"""

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from queuectl.api.main import create_app
from queuectl.db import close_db, create_schema, get_test_engine, init_db
from queuectl.types.job import RuntimeConfig


@pytest.fixture
def database_path(tmp_path: Path) -> Path:
    """Path of a fresh SQLite database file for this test."""
    return tmp_path / "queuectl.db"


@pytest.fixture
def database_url(database_path: Path) -> str:
    """Get the test database URL."""
    return f"sqlite+aiosqlite:///{database_path}"


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create an async database engine with the schema in place."""
    engine = get_test_engine(database_url)
    await create_schema(engine)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(async_engine: AsyncEngine) -> AsyncGenerator[AsyncSession]:
    """Create a database session for tests."""
    session_factory = async_sessionmaker(
        bind=async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with session_factory() as session:
        yield session

        # Rollback any uncommitted changes
        await session.rollback()


@pytest_asyncio.fixture
async def initialized_db(database_url: str) -> AsyncGenerator[str]:
    """Initialize the global engine and session factory on a fresh database."""
    await init_db(database_url)

    yield database_url

    await close_db()


@pytest.fixture
def runtime_config() -> RuntimeConfig:
    """Effective job configuration with the default values."""
    return RuntimeConfig(
        max_retries=3,
        backoff_base_seconds=2,
        backoff_max_seconds=300,
        backoff_jitter_seconds=1,
        lease_timeout_seconds=30,
    )


@pytest_asyncio.fixture
async def app(initialized_db: str) -> FastAPI:
    """Create a FastAPI app for testing with initialized database."""
    return create_app(initialized_db)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def sample_job_payload() -> dict[str, Any]:
    """Create a sample job payload."""
    return {"command": "echo hi"}
