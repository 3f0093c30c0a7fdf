# tests/fixtures/db.py
"""
DB fixtures for tests (async, SQLite via aiosqlite):
- One database file per test under `tmp_path` (full isolation, no cleanup)
- Same engine builder as production, so `BEGIN IMMEDIATE` and the partial
  unique dedup index behave as they do at runtime
- NullPool (no lingering connections between tests)
"""

from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from ingest.db import base
from ingest.db.session import build_engine, build_session_maker


@pytest.fixture(scope="session", autouse=True)
def anyio_backend():
    return "asyncio"


@pytest.fixture()
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ingest.db'}", poolclass=NullPool)
    async with eng.begin() as conn:
        await conn.run_sync(base.Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_maker(engine)


@pytest.fixture()
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Fresh session per test; services own their transactions."""
    async with session_factory() as session:
        yield session


def get_override_get_db(session_factory: async_sessionmaker[AsyncSession]):
    """FastAPI dependency override: one session per request, like production."""
    async def _override() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session
    return _override
