# ingest/db/session.py
from __future__ import annotations

"""
BBMovie Ingest: Database Engine & Session Dependencies

- One async engine/session factory shared by the API, the maintenance sweeps
  and the transcode worker.
- SQLite URLs (tests, local scripts) skip the pool knobs and are switched to
  `BEGIN IMMEDIATE` so savepoints and concurrent writers behave.
"""

from typing import Any, AsyncGenerator, Dict
import logging

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ingest.core.config import settings

logger = logging.getLogger(__name__)

# Pool knobs
_POOL_PRE_PING = True
_POOL_RECYCLE = 1800
_POOL_TIMEOUT = 30


# ─────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────
def enable_sqlite_immediate_transactions(engine: AsyncEngine) -> None:
    """
    Let SQLAlchemy (not pysqlite) own transaction boundaries on SQLite.

    pysqlite's implicit BEGIN breaks SAVEPOINT handling; emitting
    `BEGIN IMMEDIATE` takes the write lock up front so two writers queue
    instead of deadlocking on lock upgrade.
    """
    sync_engine = engine.sync_engine

    @event.listens_for(sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # pragma: no cover (driver hook)
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(sync_engine, "begin")
    def _on_begin(conn):  # pragma: no cover (driver hook)
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str, **overrides: Any) -> AsyncEngine:
    """Create an async engine with dialect-appropriate defaults."""
    kwargs: Dict[str, Any] = {"echo": False, "future": True}
    is_sqlite = url.startswith("sqlite")
    if is_sqlite:
        kwargs["connect_args"] = {"timeout": 30}
    else:
        kwargs.update(
            pool_pre_ping=_POOL_PRE_PING,
            pool_recycle=_POOL_RECYCLE,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=_POOL_TIMEOUT,
        )
    kwargs.update(overrides)
    engine = create_async_engine(url, **kwargs)
    if is_sqlite:
        enable_sqlite_immediate_transactions(engine)
    return engine


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


# ─────────────────────────────────────────────────────────────
# ⚡ ASYNC ENGINE: used by app, sweeps and worker
# ─────────────────────────────────────────────────────────────
async_engine: AsyncEngine = build_engine(settings.ASYNC_DATABASE_URL)
async_session_maker = build_session_maker(async_engine)


async def get_async_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async SQLAlchemy session."""
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def db_healthcheck() -> bool:
    """Quick SELECT 1 to verify DB connectivity (used by /readyz)."""
    try:
        async with async_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception:
        logger.exception("DB healthcheck failed")
        return False


__all__ = [
    "async_engine",
    "async_session_maker",
    "build_engine",
    "build_session_maker",
    "enable_sqlite_immediate_transactions",
    "get_async_db",
    "db_healthcheck",
]
