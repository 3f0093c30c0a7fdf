# tests/conftest.py
"""
Global test bootstrap
- Points settings at SQLite and disables the in-process scheduler BEFORE any
  ingest module is imported
- Mounts a mock Redis client into ingest.core.redis_client
- Pulls in the db, fake-collaborator, service and app fixtures
"""

from __future__ import annotations

import os

import pytest

# ──────────────────────────────────────────────────────────────────────────────
# 🌱 Test env (set before importing ingest so Settings picks it up)
# ──────────────────────────────────────────────────────────────────────────────
os.environ.setdefault("DATABASE_URL_OVERRIDE", "sqlite+aiosqlite:///./.pytest-ingest.db")
os.environ.setdefault("MAINTENANCE_SCHEDULER", "false")
os.environ.setdefault("AWS_BUCKET_NAME", "test-bucket")
os.environ.setdefault("LOG_LEVEL", "WARNING")

# ──────────────────────────────────────────────────────────────────────────────
# 🧪 Install mock Redis globally before any tests run
# ──────────────────────────────────────────────────────────────────────────────
from ingest.core.redis_client import redis_wrapper
from tests.fixtures.mocks.redis import MockRedisClient
redis_wrapper._client = MockRedisClient()   # make the service use the mock client

# ──────────────────────────────────────────────────────────────────────────────
# 📦 Pull in the rest of the fixtures
# ──────────────────────────────────────────────────────────────────────────────
from tests.fixtures.db import *          # noqa: F401,F403
from tests.fixtures.fakes import *       # noqa: F401,F403
from tests.fixtures.services import *    # noqa: F401,F403
from tests.fixtures.app import *         # noqa: F401,F403


# ──────────────────────────────────────────────────────────────────────────────
# 🔌 Redis fixture (function-scoped), cleared between tests
# ──────────────────────────────────────────────────────────────────────────────
@pytest.fixture()
async def redis_client():
    """Use this when a test inspects or seeds Redis directly."""
    client = redis_wrapper.client
    await client.flushall()
    yield client
    await client.flushall()
