"""Tests for database schema bootstrap."""

from pathlib import Path

import pytest
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from cron_weather.core import database
from cron_weather.core.config import settings

ALEMBIC_INI = Path(__file__).resolve().parent.parent / "alembic.ini"


async def table_names(engine: AsyncEngine) -> set[str]:
    async with engine.connect() as conn:
        return set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))


class TestInitDatabase:
    """Test cases for init_database."""

    @pytest.mark.asyncio
    async def test_creates_tables_without_alembic_ini(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test the metadata fallback when alembic.ini is not available."""
        monkeypatch.setattr(settings, "ALEMBIC_INI_PATH", "does-not-exist.ini")
        engine = create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

        await database.init_database(engine)

        assert {"subscriptions", "sent_alerts"} <= await table_names(engine)
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_runs_alembic_migrations(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """Test that migrations create the schema and record the revision."""
        monkeypatch.setattr(settings, "ALEMBIC_INI_PATH", str(ALEMBIC_INI))
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'weather.db'}")

        await database.init_database(engine)
        # A second run is a no-op at head
        await database.init_database(engine)

        assert {"subscriptions", "sent_alerts", "alembic_version"} <= await table_names(engine)
        await engine.dispose()


class TestEngineSingleton:
    """Tests for lazy engine and session factory creation."""

    @pytest.mark.asyncio
    async def test_engine_and_factory_are_cached(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that repeated calls return the same objects until disposed."""
        monkeypatch.setattr(database, "_engine", None)
        monkeypatch.setattr(database, "_session_factory", None)

        engine = database.get_engine()
        factory = database.get_session_factory()

        assert database.get_engine() is engine
        assert database.get_session_factory() is factory

        await database.dispose_engine()

        assert database._engine is None
        assert database._session_factory is None
