"""Database configuration and session management."""

import asyncio
import threading
from pathlib import Path

import structlog
from alembic import command
from alembic.config import Config
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from cron_weather.core.config import settings
from cron_weather.core.utils import convert_async_db_url_to_sync
from cron_weather.models import Base

logger = structlog.get_logger(__name__)

# Module-level globals for lazy initialization
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

# Thread locks for thread-safe singleton initialization
_engine_lock = threading.Lock()
_session_factory_lock = threading.Lock()


def get_engine() -> AsyncEngine:
    """
    Get or create database engine (lazy initialization).

    Thread-safe implementation using double-checked locking ensures only one
    engine instance is created even with concurrent access.

    Returns:
        AsyncEngine: SQLAlchemy async engine
    """
    global _engine  # noqa: PLW0603
    if _engine is None:
        with _engine_lock:
            if _engine is None:  # Double-checked locking
                _engine = create_async_engine(
                    settings.DATABASE_URL,
                    echo=settings.DATABASE_ECHO,
                    future=True,
                )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Get or create session factory (lazy initialization).

    Returns:
        async_sessionmaker[AsyncSession]: SQLAlchemy async session factory
    """
    global _session_factory  # noqa: PLW0603
    if _session_factory is None:
        with _session_factory_lock:
            if _session_factory is None:  # Double-checked locking
                _session_factory = async_sessionmaker(
                    get_engine(),
                    class_=AsyncSession,
                    expire_on_commit=False,
                    autoflush=False,
                )
    return _session_factory


async def dispose_engine() -> None:
    """Dispose the engine and forget the cached singletons."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def _run_alembic_upgrade(alembic_ini_path: Path, database_url: str) -> None:
    """Run `alembic upgrade head` synchronously (called in a worker thread)."""
    alembic_cfg = Config(str(alembic_ini_path))
    alembic_cfg.set_main_option("sqlalchemy.url", convert_async_db_url_to_sync(database_url))
    # Keep the structlog handlers installed by configure_logging()
    alembic_cfg.attributes["configure_logger"] = False
    command.upgrade(alembic_cfg, "head")


async def init_database(engine: AsyncEngine | None = None) -> None:
    """
    Bring the database schema up to date.

    Runs Alembic migrations when alembic.ini is available at ALEMBIC_INI_PATH.
    Otherwise (e.g. an installed wheel without the migration scripts) the
    tables are created directly from the model metadata if missing.

    Args:
        engine: Engine to use for the metadata fallback (defaults to get_engine())
    """
    engine = engine or get_engine()
    alembic_ini_path = Path(settings.ALEMBIC_INI_PATH)

    if alembic_ini_path.exists():
        database_url = engine.url.render_as_string(hide_password=False)
        await asyncio.to_thread(_run_alembic_upgrade, alembic_ini_path, database_url)
        logger.info("database_migrated", alembic_ini=str(alembic_ini_path))
        return

    logger.warning("alembic_ini_not_found", path=settings.ALEMBIC_INI_PATH, action="creating tables from metadata")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
