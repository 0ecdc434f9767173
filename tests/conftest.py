"""
Shared test configuration and fixtures for the registration service tests.

Provides database setup on SQLite (or the database named by TEST_DATABASE_URL),
fake Redis clients, and fake remote account and OAuth provider services served
by aiohttp test servers.
"""

import os

import aiohttp
import fakeredis.aioredis
import pytest
import pytest_asyncio
from aiohttp.test_utils import TestServer
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from tavern.register.model.base import Base
from tests.test_helpers import (
    FakeAccountService,
    FakeClock,
    FakeOAuthProvider,
    RecordingMetricsClient,
)


# Test database configuration. Point TEST_DATABASE_URL at a scratch PostgreSQL
# database (postgresql+asyncpg://...) to run the model tests against it.
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "")


@pytest.fixture
def database_url(tmp_path):
    if len(TEST_DATABASE_URL) > 0:
        return TEST_DATABASE_URL
    return f"sqlite+aiosqlite:///{tmp_path / 'register_test.db'}"


@pytest_asyncio.fixture(scope="function")
async def engine(database_url):
    """Create async SQLAlchemy engine with a fresh schema for each test."""
    engine = create_async_engine(database_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def session(session_maker):
    """Create async database session for testing."""
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def fake_redis_client():
    """Provide fake Redis client for unit tests."""
    client = fakeredis.aioredis.FakeRedis(decode_responses=False)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metrics_client():
    return RecordingMetricsClient()


@pytest_asyncio.fixture
async def http_session():
    """Shared client session without cookie storage, as the server creates it."""
    session = aiohttp.ClientSession(cookie_jar=aiohttp.DummyCookieJar())
    yield session
    await session.close()


@pytest_asyncio.fixture
async def account_service():
    """A fake remote account service listening on a local port."""
    service = FakeAccountService()
    server = TestServer(service.make_app())
    await server.start_server()
    service.base_url = str(server.make_url("/")).rstrip("/")
    yield service
    await server.close()


@pytest_asyncio.fixture
async def oauth_provider():
    """A fake OAuth provider serving token and user-info endpoints."""
    provider = FakeOAuthProvider()
    server = TestServer(provider.make_app())
    await server.start_server()
    provider.base_url = str(server.make_url("/")).rstrip("/")
    yield provider
    await server.close()
