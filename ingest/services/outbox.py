from __future__ import annotations

"""
BBMovie Ingest: Reliable Outbox
================================

At-least-once handoff of media events to the message bus.

Write side
----------
`enqueue_media_event(db, media, event_type)` adds an `OutboxEvent` row to the
caller's session. It is only ever called from inside the transaction that
changes the MediaFile status, so the event commits or rolls back with it.

Read side
---------
`OutboxPublisher.publish_pending()` (every `OUTBOX_PUBLISH_INTERVAL_SECONDS`):

1) Claim up to `OUTBOX_BATCH_SIZE` PENDING rows, oldest first, with
   `SELECT ... FOR UPDATE SKIP LOCKED` so replicas never double-publish.
2) Deliver each row independently; a failure only touches that row.
3) Success → SENT + `sent_at`. Failure → `retry_count += 1`, `last_error`;
   at `OUTBOX_MAX_RETRIES` the row is dead-lettered as FAILED.
4) Commit once for the whole batch (locks held until then).

`clean_sent()` purges SENT rows older than the retention window;
`requeue_failed()` moves dead-lettered rows back to PENDING for replays.

Retry cadence is a fixed delay by default; `RetryPolicy` is the seam for
backoff strategies.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import json
import logging
from typing import Any, Callable, Dict, Iterable, Optional, Protocol
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ingest.core.config import settings
from ingest.db.base_class import utcnow
from ingest.db.models import MediaFile, OutboxEvent
from ingest.schemas.enums import OutboxEventType, OutboxStatus
from ingest.utils.messaging import MessageBus

logger = logging.getLogger("outbox")


# ─────────────────────────────────────────────────────────────
# ⏱️ Retry policies
# ─────────────────────────────────────────────────────────────
class RetryPolicy(Protocol):
    def delay_for(self, retry_count: int) -> timedelta: ...


@dataclass(frozen=True)
class FixedDelayPolicy:
    """Same wait before every retry (0 = retry on the next sweep)."""
    seconds: float = 0.0

    def delay_for(self, retry_count: int) -> timedelta:
        return timedelta(seconds=self.seconds)


@dataclass(frozen=True)
class ExponentialBackoffPolicy:
    """`base * factor**(retry_count-1)`, capped."""
    base_seconds: float = 30.0
    factor: float = 2.0
    max_seconds: float = 3600.0

    def delay_for(self, retry_count: int) -> timedelta:
        if retry_count <= 0:
            return timedelta(0)
        secs = self.base_seconds * (self.factor ** (retry_count - 1))
        return timedelta(seconds=min(secs, self.max_seconds))


def _is_due(event: OutboxEvent, policy: RetryPolicy, now: datetime) -> bool:
    if event.retry_count == 0 or event.last_attempt_at is None:
        return True
    return event.last_attempt_at + policy.delay_for(int(event.retry_count)) <= now


# ─────────────────────────────────────────────────────────────
# ✍️ Write side
# ─────────────────────────────────────────────────────────────
def build_media_payload(media: MediaFile, event_type: OutboxEventType, *, occurred_at: Optional[datetime] = None) -> Dict[str, Any]:
    """JSON payload consumers correlate on (`media_id` is the aggregate id)."""
    return {
        "event_id": uuid4().hex,
        "event_type": event_type.value,
        "media_id": str(media.id),
        "upload_id": media.upload_id,
        "user_id": media.user_id,
        "bucket": media.bucket,
        "object_key": media.object_key,
        "purpose": getattr(media.purpose, "value", media.purpose),
        "mime_type": media.mime_type,
        "size_bytes": media.size_bytes,
        "checksum": media.checksum,
        "status": getattr(media.status, "value", media.status),
        "reason": media.status_reason,
        "occurred_at": (occurred_at or utcnow()).isoformat(),
    }


def enqueue_media_event(db: AsyncSession, media: MediaFile, event_type: OutboxEventType) -> OutboxEvent:
    """Stage an outbox row in the caller's transaction."""
    event = OutboxEvent(
        aggregate_id=str(media.id),
        event_type=event_type.name,
        subject=event_type.value,
        payload=build_media_payload(media, event_type),
        status=OutboxStatus.PENDING,
        retry_count=0,
        created_at=utcnow(),
    )
    db.add(event)
    return event


def serialize_payload(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


# ─────────────────────────────────────────────────────────────
# 📤 Read side
# ─────────────────────────────────────────────────────────────
class OutboxPublisher:
    """Sweeps PENDING outbox rows onto the message bus."""

    def __init__(
        self,
        bus: MessageBus,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_retries: Optional[int] = None,
        batch_size: Optional[int] = None,
        retention: Optional[timedelta] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.bus = bus
        self.session_factory = session_factory
        self.max_retries = int(max_retries or settings.OUTBOX_MAX_RETRIES)
        self.batch_size = int(batch_size or settings.OUTBOX_BATCH_SIZE)
        self.retention = retention or timedelta(hours=settings.OUTBOX_RETENTION_HOURS)
        self.retry_policy: RetryPolicy = retry_policy or FixedDelayPolicy(settings.OUTBOX_RETRY_DELAY_SECONDS)
        self._clock = clock

    async def publish_pending(self) -> Dict[str, int]:
        """Deliver one batch; returns `{claimed, sent, retried, dead_lettered}`."""
        summary = {"claimed": 0, "sent": 0, "retried": 0, "dead_lettered": 0}
        now = self._clock()

        async with self.session_factory() as db:
            async with db.begin():
                stmt = (
                    select(OutboxEvent)
                    .where(
                        OutboxEvent.status == OutboxStatus.PENDING,
                        OutboxEvent.retry_count < self.max_retries,
                    )
                    .order_by(OutboxEvent.created_at.asc(), OutboxEvent.id.asc())
                    .limit(self.batch_size)
                    .with_for_update(skip_locked=True)
                )
                events = (await db.execute(stmt)).scalars().all()

                for event in events:
                    if not _is_due(event, self.retry_policy, now):
                        continue
                    summary["claimed"] += 1
                    event.last_attempt_at = now
                    try:
                        await self.bus.publish(event.subject, serialize_payload(event.payload))
                    except Exception as e:  # noqa: BLE001
                        event.retry_count = int(event.retry_count) + 1
                        event.last_error = f"{type(e).__name__}: {e}"[:2000]
                        if event.retry_count >= self.max_retries:
                            event.status = OutboxStatus.FAILED
                            summary["dead_lettered"] += 1
                            logger.error(
                                "Outbox event %s dead-lettered after %s attempts (aggregate=%s): %s",
                                event.id, event.retry_count, event.aggregate_id, event.last_error,
                            )
                        else:
                            summary["retried"] += 1
                            logger.warning(
                                "Outbox delivery failed for event %s (attempt %s/%s): %s",
                                event.id, event.retry_count, self.max_retries, event.last_error,
                            )
                        continue

                    event.status = OutboxStatus.SENT
                    event.sent_at = now
                    event.last_error = None
                    summary["sent"] += 1

        if summary["claimed"]:
            logger.info(
                "Outbox sweep: claimed=%s sent=%s retried=%s dead_lettered=%s",
                summary["claimed"], summary["sent"], summary["retried"], summary["dead_lettered"],
            )
        else:
            logger.debug("Outbox sweep: nothing to publish")
        return summary

    async def clean_sent(self) -> int:
        """Delete SENT rows whose `sent_at` is past the retention window."""
        cutoff = self._clock() - self.retention
        async with self.session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    delete(OutboxEvent).where(
                        OutboxEvent.status == OutboxStatus.SENT,
                        OutboxEvent.sent_at < cutoff,
                    )
                )
        purged = int(result.rowcount or 0)
        if purged:
            logger.info("Outbox cleanup: purged=%s (sent before %s)", purged, cutoff.isoformat())
        return purged

    async def requeue_failed(self, event_ids: Optional[Iterable[int]] = None) -> int:
        """Move dead-lettered rows back to PENDING with a fresh retry budget."""
        stmt = update(OutboxEvent).where(OutboxEvent.status == OutboxStatus.FAILED)
        if event_ids is not None:
            ids = [int(i) for i in event_ids]
            if not ids:
                return 0
            stmt = stmt.where(OutboxEvent.id.in_(ids))
        stmt = stmt.values(status=OutboxStatus.PENDING, retry_count=0, last_error=None)
        async with self.session_factory() as db:
            async with db.begin():
                result = await db.execute(stmt.execution_options(synchronize_session=False))
        requeued = int(result.rowcount or 0)
        if requeued:
            logger.info("Outbox requeue: %s event(s) back to PENDING", requeued)
        return requeued


__all__ = [
    "RetryPolicy",
    "FixedDelayPolicy",
    "ExponentialBackoffPolicy",
    "OutboxPublisher",
    "build_media_payload",
    "enqueue_media_event",
    "serialize_payload",
]
