# ingest/utils/messaging.py
from __future__ import annotations

"""
BBMovie Ingest: Message Bus (Redis Streams)
--------------------------------------------
The outbox publisher's only sink. `publish(subject, data)` appends one entry
to the stream named after the subject; once `XADD` returns, durability is the
bus's responsibility.

Consumers (the transcode worker) read with consumer groups so every entry
is processed by one worker and acknowledged after the work is committed.
Entries a dead worker left unacked are claimed by a live one once they have
been idle longer than any probe can take.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol, Tuple

from ingest.core.config import settings
from ingest.core.redis_client import RedisClient, redis_wrapper

logger = logging.getLogger(__name__)

PAYLOAD_FIELD = "data"


class MessageBus(Protocol):
    async def publish(self, subject: str, data: bytes) -> None: ...


class RedisStreamBus:
    """`MessageBus` over Redis Streams (`XADD` with approximate MAXLEN trim)."""

    def __init__(self, redis: Optional[RedisClient] = None, *, maxlen: Optional[int] = None) -> None:
        self._redis = redis or redis_wrapper
        self._maxlen = maxlen or settings.BUS_STREAM_MAXLEN

    async def publish(self, subject: str, data: bytes) -> None:
        entry_id = await self._redis.client.xadd(
            subject,
            {PAYLOAD_FIELD: data.decode("utf-8")},
            maxlen=self._maxlen,
            approximate=True,
        )
        logger.debug("Published to %s (entry=%s)", subject, entry_id)


class RedisStreamConsumer:
    """Consumer-group reader for one subject."""

    def __init__(
        self,
        subject: str,
        *,
        group: str,
        consumer: str,
        redis: Optional[RedisClient] = None,
        block_ms: int = 5000,
        count: int = 1,
    ) -> None:
        self.subject = subject
        self.group = group
        self.consumer = consumer
        self._redis = redis or redis_wrapper
        self._block_ms = block_ms
        self._count = count

    async def ensure_group(self) -> None:
        """Create the consumer group (and stream) if missing."""
        try:
            await self._redis.client.xgroup_create(self.subject, self.group, id="0", mkstream=True)
            logger.info("Created consumer group %s on %s", self.group, self.subject)
        except Exception as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def read(self, *, pending: bool = False) -> List[Tuple[str, Dict[str, Any]]]:
        """
        Entries for this consumer as `(entry_id, fields)` pairs.

        `pending=True` re-reads entries delivered earlier but never acked
        (crash recovery) without blocking; otherwise blocks for new ones.
        """
        resp = await self._redis.client.xreadgroup(
            self.group,
            self.consumer,
            {self.subject: "0" if pending else ">"},
            count=self._count,
            block=None if pending else self._block_ms,
        )
        out: List[Tuple[str, Dict[str, Any]]] = []
        for _stream, entries in resp or []:
            for entry_id, fields in entries:
                out.append((entry_id, fields))
        return out

    async def claim_stale(self, *, min_idle_ms: Optional[int] = None) -> List[Tuple[str, Dict[str, Any]]]:
        """
        Take over entries any consumer of the group left unacked for at least
        `min_idle_ms` (a worker that died mid-entry) with `XAUTOCLAIM`.

        Claimed entries become this consumer's pending entries. Entries
        trimmed from the stream since delivery are skipped.
        """
        idle = min_idle_ms if min_idle_ms is not None else settings.WORKER_CLAIM_IDLE_SECONDS * 1000
        resp = await self._redis.client.xautoclaim(
            self.subject,
            self.group,
            self.consumer,
            min_idle_time=idle,
            start_id="0-0",
            count=self._count,
        )
        out: List[Tuple[str, Dict[str, Any]]] = []
        for entry_id, fields in (resp[1] if resp else []):
            if entry_id is None or fields is None:
                continue
            out.append((entry_id, fields))
        if out:
            logger.info("Claimed %s stale entries on %s", len(out), self.subject)
        return out

    async def ack(self, entry_id: str) -> None:
        await self._redis.client.xack(self.subject, self.group, entry_id)


__all__ = ["MessageBus", "RedisStreamBus", "RedisStreamConsumer", "PAYLOAD_FIELD"]
