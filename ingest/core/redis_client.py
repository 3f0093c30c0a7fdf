# ingest/core/redis_client.py
from __future__ import annotations

"""
BBMovie Ingest: Redis Client (Async)
=====================================
Central, **single source of truth** for Redis access: the message bus
(Redis Streams) and the maintenance-sweep locks both go through here.

Public API (imported as `redis_wrapper`)
----------------------------------------
- await redis_wrapper.connect() / await redis_wrapper.close() / await redis_wrapper.is_connected()
- redis_wrapper.client
- async with redis_wrapper.lock(name, timeout=10, blocking_timeout=3): ...

Design notes
------------
• **Strict** on locks: raise `TimeoutError` if not acquired within `blocking_timeout`.
• Compatible with test mocks that only implement `set/get/delete`.
"""

import asyncio
import logging
import os
import random
import time
from contextlib import asynccontextmanager
from typing import Any, Optional, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

from ingest.core.config import settings

logger = logging.getLogger("redis")

# ─────────────────────────────────────────────────────────────────────────────
# Tunables (env-aware sensible defaults)
# ─────────────────────────────────────────────────────────────────────────────
MAX_RETRIES = int(os.getenv("REDIS_CONNECT_MAX_RETRIES", "5"))
BASE_DELAY = float(os.getenv("REDIS_CONNECT_BASE_DELAY", "0.3"))  # seconds
HEALTH_CHECK_INTERVAL = int(os.getenv("REDIS_HEALTH_CHECK_INTERVAL", "30"))  # seconds
SOCKET_TIMEOUT = float(os.getenv("REDIS_SOCKET_TIMEOUT", "10"))
SOCKET_CONNECT_TIMEOUT = float(os.getenv("REDIS_SOCKET_CONNECT_TIMEOUT", "3"))
POOL_MAX_CONNECTIONS = int(os.getenv("REDIS_POOL_MAX_CONNECTIONS", "64"))
CLIENT_NAME = os.getenv("REDIS_CLIENT_NAME", "bbmovie-ingest")


# ─────────────────────────────────────────────────────────────────────────────
# Minimal protocol the real client and test mocks satisfy (typing only)
# ─────────────────────────────────────────────────────────────────────────────
class _RedisProto(Protocol):
    async def ping(self) -> Any: ...
    async def set(self, name: str, value: Any, *, ex: Optional[int] = None, nx: Optional[bool] = None) -> Any: ...
    async def get(self, name: str) -> Any: ...
    async def delete(self, *names: Any) -> Any: ...
    async def xadd(self, name: str, fields: dict, *, maxlen: Optional[int] = None, approximate: bool = True) -> Any: ...
    async def xgroup_create(self, name: str, groupname: str, id: str = "$", mkstream: bool = False) -> Any: ...
    async def xreadgroup(self, groupname: str, consumername: str, streams: dict, count: Optional[int] = None, block: Optional[int] = None) -> Any: ...
    async def xack(self, name: str, groupname: str, *ids: Any) -> Any: ...
    async def xautoclaim(self, name: str, groupname: str, consumername: str, min_idle_time: int, start_id: str = "0-0", count: Optional[int] = None) -> Any: ...
    async def close(self) -> Any: ...


# ─────────────────────────────────────────────────────────────────────────────
# Client
# ─────────────────────────────────────────────────────────────────────────────
class RedisClient:
    """
    Redis connection manager (asyncio).

    Features
    --------
    • Resilient connect with exponential backoff + jitter
    • Pooled connections, health checks
    • Owner-token distributed lock for single-runner sweeps
    """

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self._client: Optional[_RedisProto] = None

    # ── lifecycle ────────────────────────────────────────────────────────────
    def _build(self) -> _RedisProto:
        return redis.Redis.from_url(
            self.redis_url.strip(),
            decode_responses=True,
            health_check_interval=HEALTH_CHECK_INTERVAL,
            socket_keepalive=True,
            socket_timeout=SOCKET_TIMEOUT,
            socket_connect_timeout=SOCKET_CONNECT_TIMEOUT,
            retry_on_timeout=True,
            max_connections=POOL_MAX_CONNECTIONS,
            client_name=CLIENT_NAME,
        )

    async def connect(self) -> None:
        """Connect with exponential backoff; a healthy existing client is kept."""
        if self._client and await self.is_connected():
            return
        self._client = None

        last_err: Optional[Exception] = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                self._client = self._build()
                await self._client.ping()
                logger.info("✅ Connected to Redis")
                return
            except Exception as e:  # noqa: BLE001
                last_err = e
                delay = self._backoff(attempt)
                logger.warning(
                    "Redis connect attempt %s/%s failed: %s (retrying in %.2fs)",
                    attempt, MAX_RETRIES, repr(e), delay,
                )
                await asyncio.sleep(delay)

        logger.error("❌ Redis connection failed after %s retries.", MAX_RETRIES)
        raise RuntimeError("Redis connection failed") from last_err

    async def close(self) -> None:
        """Gracefully close the client and its pool."""
        if not self._client:
            return
        try:
            await self._client.close()
            logger.info("🛑 Redis connection closed.")
        except RedisError as e:
            logger.warning("Error closing Redis connection: %s", e)
        finally:
            self._client = None

    async def is_connected(self) -> bool:
        """Return True if `PING` succeeds (healthy connection)."""
        if not self._client:
            return False
        try:
            return bool(await self._client.ping())
        except RedisError:
            return False

    @property
    def client(self) -> _RedisProto:
        """Low-level client; ensure `connect()` was called at startup."""
        if not self._client:
            raise RuntimeError("Redis client not initialized. Call connect() first.")
        return self._client

    # ── lock ────────────────────────────────────────────────────────────────
    @asynccontextmanager
    async def lock(
        self,
        name: str,
        *,
        timeout: int = 10,
        blocking_timeout: float = 3,
        sleep: float = 0.2,
    ):
        """
        Async distributed lock (`SET NX EX` with an owner token).

        Failure semantics
        -----------------
        - If Redis is **not connected**, raise `RuntimeError`.
        - If not acquired within `blocking_timeout`, raise built-in `TimeoutError`.
        - Only the owner token releases the key; release is best-effort.
        """
        rc = self.client
        token = f"{time.time_ns()}-{os.getpid()}-{random.randint(0, 1_000_000)}"
        deadline = time.monotonic() + max(0.0, float(blocking_timeout))
        acquired = False
        try:
            while True:
                if await rc.set(name, token, ex=int(timeout), nx=True):
                    acquired = True
                    break
                if time.monotonic() >= deadline:
                    raise TimeoutError(f"Failed to acquire lock: {name}")
                await asyncio.sleep(sleep)

            yield  # critical section

        finally:
            if acquired:
                try:
                    val = await rc.get(name)
                    if isinstance(val, (bytes, bytearray)):
                        val = val.decode("utf-8", errors="ignore")
                    if val == token:
                        await rc.delete(name)
                except Exception:
                    logger.debug("Redis lock release failed (best-effort).", exc_info=True)

    # ── internals ───────────────────────────────────────────────────────────
    @staticmethod
    def _backoff(attempt: int) -> float:
        # Exponential backoff with jitter (cap at 3s)
        return min(3.0, BASE_DELAY * (2 ** (attempt - 1))) + random.uniform(0, 0.25)


# ─────────────────────────────────────────────────────────────────────────────
# Singleton instance
# ─────────────────────────────────────────────────────────────────────────────
redis_wrapper = RedisClient(getattr(settings, "REDIS_URL", "redis://localhost:6379/0"))

__all__ = ["RedisClient", "redis_wrapper"]
