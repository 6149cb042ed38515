"""Test fixtures — create/drop tables around each database-backed test."""

import os
from collections.abc import AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Force SQLite test database *before* any app import
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_leadflow.db"
os.environ["DATABASE_URL_SYNC"] = "sqlite:///./test_leadflow.db"

from leadflow.database import Base, async_session, engine  # noqa: E402
from leadflow.main import app  # noqa: E402


@pytest_asyncio.fixture
async def _setup_db():
    """Create all tables before the test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # Pooled connections are bound to this test's event loop
    await engine.dispose()


@pytest_asyncio.fixture
async def db(_setup_db):
    async with async_session() as session:
        yield session


@pytest_asyncio.fixture
async def client(_setup_db) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
