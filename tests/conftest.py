"""Shared pytest fixtures for all test suites."""

import os
import uuid
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from backend.app.db.inmemory import InMemoryStore
from backend.app.db.models import Base
from backend.app.docs.storage import InMemoryStorage


@pytest.fixture
def user_id() -> uuid.UUID:
    """Owner for test documents and sessions."""
    return uuid.uuid4()


@pytest.fixture
def store() -> InMemoryStore:
    """Fresh in-memory repositories."""
    return InMemoryStore()


@pytest.fixture
def storage() -> InMemoryStorage:
    """Fresh in-memory object storage."""
    return InMemoryStorage()


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed aiosqlite engine with all tables created.

    A file (rather than :memory:) keeps the data visible across connections.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        poolclass=NullPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def sqlite_session_factory(sqlite_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the SQLite test engine."""
    return async_sessionmaker(bind=sqlite_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def postgres_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create async engine for PostgreSQL integration tests.

    Requires DATABASE_URL to be set to a real PostgreSQL connection string.
    Tests using this fixture should be marked with @pytest.mark.postgres.
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set - skipping postgres test")

    # Ensure it's a postgres URL
    if not database_url.startswith(("postgresql://", "postgresql+asyncpg://")):
        pytest.skip(f"DATABASE_URL is not PostgreSQL: {database_url}")

    # Convert to async driver if needed
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    engine = create_async_engine(
        database_url,
        poolclass=NullPool,
        echo=False,
    )

    # Create tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Cleanup: drop all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()
