"""
Test configuration and fixtures.
Uses SQLite (aiosqlite) for fast tests. Mocks Redis and Stripe API calls.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB, UUID
from src.database import Base
import src.models  # noqa: F401  (registers every table on Base.metadata)


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


# Postgres UUID columns as text; SQLite would give a bare UUID column NUMERIC
# affinity and read all-digit hex values back as numbers
@compiles(UUID, "sqlite")
def _compile_uuid_sqlite(type_, compiler, **kw):
    return "CHAR(32)"


@pytest.fixture
async def db():
    """In-memory SQLite database for tests that only need one session."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
async def session_factory(tmp_path):
    """
    File-backed SQLite installed as the application session factory.
    Services and workers open their own sessions, so they need a database
    that every connection sees.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'blawby_test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    with patch("src.database._async_session_factory", factory):
        yield factory
    await engine.dispose()


@pytest.fixture(autouse=True)
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("src.utils.redis_client.get_redis", new_callable=AsyncMock) as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.ping = AsyncMock(return_value=True)
        redis_mock.lpush = AsyncMock(return_value=1)
        redis_mock.brpop = AsyncMock(return_value=None)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
def no_outbox_drain():
    """Stop publishers from enqueueing outbox drain jobs."""
    with patch("src.services.event_publisher.request_outbox_drain", new_callable=AsyncMock) as mock:
        mock.return_value = None
        yield mock
