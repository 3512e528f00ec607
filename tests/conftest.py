"""Pytest configuration and fixtures."""

import os

# Keep tests independent of a developer's .env and tracing setup.
# This must be done before cron_weather.core.config loads settings
os.environ["OTEL_ENABLED"] = "false"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

from collections.abc import AsyncGenerator
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cron_weather.models import Base
from cron_weather.schemas.subscription import Subscription
from cron_weather.services.subscription_service import SubscriptionRepository
from tests.helpers.fakes import make_logger


@pytest.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine]:
    """
    In-memory SQLite engine with the schema created from model metadata.

    StaticPool keeps a single connection so every session sees the same
    in-memory database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the in-memory test database."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def repository(session_factory: async_sessionmaker[AsyncSession]) -> SubscriptionRepository:
    """Repository backed by the in-memory test database."""
    return SubscriptionRepository(session_factory)


@pytest.fixture
def subscription() -> Subscription:
    """A Moscow subscription polled every 30 seconds."""
    return Subscription(chat_id=42, interval=timedelta(seconds=30), lat=55.7558, lon=37.6173)


@pytest.fixture
def job_logger() -> MagicMock:
    """Per-invocation logger double."""
    return make_logger()
