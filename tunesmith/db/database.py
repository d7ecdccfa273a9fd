"""
Async SQLAlchemy engine for the generation job store.

Every job lifecycle and every detached migration opens its own short
session, so a busy instance has many small concurrent writers.  PostgreSQL
gets a sized, pre-pinged pool; SQLite gets WAL journaling and a busy
timeout so readers never block the writer and writers queue instead of
failing with "database is locked".
"""
from __future__ import annotations

import logging
from typing import Any, AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from tunesmith.config import settings

logger = logging.getLogger(__name__)

_DEFAULT_SQLITE_URL = "sqlite+aiosqlite:///./tunesmith.db"


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_database_url() -> str:
    url = settings.database_url
    if not url:
        logger.warning(f"No database URL configured, using SQLite: {_DEFAULT_SQLITE_URL}")
        url = _DEFAULT_SQLITE_URL
    return url


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def engine_options(url: str) -> dict[str, Any]:
    """Keyword arguments for ``create_async_engine`` for this backend."""
    if _is_sqlite(url):
        return {
            "connect_args": {
                "check_same_thread": False,
                "timeout": settings.sqlite_busy_timeout_seconds,
            },
        }
    return {
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_timeout": settings.db_pool_timeout_seconds,
        "pool_pre_ping": True,
    }


def _enable_sqlite_wal(engine: AsyncEngine) -> None:
    busy_ms = int(settings.sqlite_busy_timeout_seconds * 1000)

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={busy_ms}")
        cursor.close()


def build_engine(url: str) -> AsyncEngine:
    engine = create_async_engine(url, echo=settings.debug, **engine_options(url))
    if _is_sqlite(url) and ":memory:" not in url:
        _enable_sqlite_wal(engine)
    return engine


async def init_db() -> None:
    """Create the engine and session factory.

    Schema is owned by Alembic (``alembic upgrade head`` runs before the app
    starts).
    """
    global _engine, _async_session_factory

    database_url = get_database_url()
    logger.info(f"Initializing job store: {database_url.split('@')[-1]}")

    _engine = build_engine(database_url)
    _async_session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    # Populate the mapper registry; Alembic owns DDL.
    from tunesmith.db import models  # noqa: F401

    logger.info("Job store ready")


async def close_db() -> None:
    global _engine, _async_session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("Job store connections closed")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Read-only session for the status routes.

    Job writes go through the orchestrator, which commits its own sessions.
    """
    async with AsyncSessionLocal() as session:
        yield session


def AsyncSessionLocal() -> AsyncSession:
    """New session outside FastAPI (orchestrator lifecycles, migrations)."""
    if _async_session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _async_session_factory()
