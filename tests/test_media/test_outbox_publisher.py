# tests/test_media/test_outbox_publisher.py

import json
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from ingest.db.base_class import utcnow
from ingest.db.models import OutboxEvent
from ingest.schemas.enums import MediaStatus, OutboxStatus
from ingest.services.outbox import (
    ExponentialBackoffPolicy,
    FixedDelayPolicy,
    OutboxPublisher,
    serialize_payload,
)
from ingest.utils.messaging import RedisStreamBus

S = MediaStatus


async def _validated(state_machine, db, media_factory, **overrides):
    media = await media_factory(**overrides)
    return await state_machine.transition(db, media.id, S.UPLOADED, S.VALIDATED)


async def _rows(session_factory):
    async with session_factory() as db:
        return list((await db.execute(select(OutboxEvent).order_by(OutboxEvent.id))).scalars().all())


# ──────────────────────────────────────────────────────────────────────
# Retry policies
# ──────────────────────────────────────────────────────────────────────

def test_retry_policies():
    assert FixedDelayPolicy(10).delay_for(3) == timedelta(seconds=10)
    backoff = ExponentialBackoffPolicy(base_seconds=30, factor=2, max_seconds=100)
    assert backoff.delay_for(0) == timedelta(0)
    assert backoff.delay_for(1) == timedelta(seconds=30)
    assert backoff.delay_for(2) == timedelta(seconds=60)
    assert backoff.delay_for(3) == timedelta(seconds=100)


# ──────────────────────────────────────────────────────────────────────
# Publish
# ──────────────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_publish_marks_sent_in_creation_order(publisher, fake_bus, state_machine, db_session, session_factory, media_factory):
    """
    ✅ PENDING rows are delivered oldest first and marked SENT with a timestamp.
    """
    first = await _validated(state_machine, db_session, media_factory)
    second = await _validated(state_machine, db_session, media_factory)

    summary = await publisher.publish_pending()
    assert summary == {"claimed": 2, "sent": 2, "retried": 0, "dead_lettered": 0}

    assert fake_bus.subjects() == ["media.transcode.requested"] * 2
    assert [p["media_id"] for _, p in fake_bus.published] == [str(first.id), str(second.id)]

    rows = await _rows(session_factory)
    assert all(r.status == OutboxStatus.SENT and r.sent_at is not None for r in rows)

    again = await publisher.publish_pending()
    assert again["claimed"] == 0
    assert len(fake_bus.published) == 2


@pytest.mark.anyio
async def test_bus_outage_retries_then_dead_letters(publisher, fake_bus, state_machine, db_session, session_factory, media_factory):
    """
    ❌ Bus down: retry_count grows each sweep; at max_retries the row is FAILED.
    ✅ requeue_failed() gives it a fresh budget and the next sweep delivers it.
    """
    await _validated(state_machine, db_session, media_factory)
    fake_bus.fail = True

    assert (await publisher.publish_pending())["retried"] == 1
    assert (await publisher.publish_pending())["retried"] == 1
    assert (await publisher.publish_pending())["dead_lettered"] == 1
    assert fake_bus.attempts == 3

    [row] = await _rows(session_factory)
    assert row.status == OutboxStatus.FAILED
    assert row.retry_count == 3
    assert "ConnectionError" in row.last_error

    assert (await publisher.publish_pending())["claimed"] == 0

    fake_bus.fail = False
    assert await publisher.requeue_failed() == 1
    assert (await publisher.publish_pending())["sent"] == 1

    [row] = await _rows(session_factory)
    assert row.status == OutboxStatus.SENT
    assert row.retry_count == 0 and row.last_error is None


@pytest.mark.anyio
async def test_one_rejected_event_does_not_block_the_batch(publisher, fake_bus, state_machine, db_session, session_factory, media_factory):
    """
    ❌ The bus rejects only the second file's event → that row stays PENDING with one retry.
    ✅ The events before and after it in the same sweep are delivered and marked SENT.
    """
    first = await _validated(state_machine, db_session, media_factory)
    second = await _validated(state_machine, db_session, media_factory)
    third = await _validated(state_machine, db_session, media_factory)
    fake_bus.fail_for = {str(second.id)}

    summary = await publisher.publish_pending()
    assert summary == {"claimed": 3, "sent": 2, "retried": 1, "dead_lettered": 0}
    assert [p["media_id"] for _, p in fake_bus.published] == [str(first.id), str(third.id)]

    by_media = {r.aggregate_id: r for r in await _rows(session_factory)}
    assert by_media[str(first.id)].status == OutboxStatus.SENT
    assert by_media[str(third.id)].status == OutboxStatus.SENT
    rejected = by_media[str(second.id)]
    assert rejected.status == OutboxStatus.PENDING
    assert rejected.retry_count == 1
    assert "bus rejected" in rejected.last_error


@pytest.mark.anyio
async def test_requeue_failed_by_id(publisher, session_factory, db_session, state_machine, media_factory):
    await _validated(state_machine, db_session, media_factory)
    async with session_factory() as db:
        async with db.begin():
            [row] = (await db.execute(select(OutboxEvent))).scalars().all()
            row.status = OutboxStatus.FAILED
            row.retry_count = 3

    assert await publisher.requeue_failed([]) == 0
    assert await publisher.requeue_failed([row.id + 1]) == 0
    assert await publisher.requeue_failed([row.id]) == 1


@pytest.mark.anyio
async def test_backoff_policy_defers_retry(fake_bus, session_factory, state_machine, db_session, media_factory):
    """
    ✅ With a 60s backoff a failed row is skipped by the next immediate sweep.
    """
    await _validated(state_machine, db_session, media_factory)
    fake_bus.fail = True
    publisher = OutboxPublisher(
        fake_bus,
        session_factory,
        max_retries=5,
        retry_policy=ExponentialBackoffPolicy(base_seconds=60),
    )
    assert (await publisher.publish_pending())["retried"] == 1
    assert (await publisher.publish_pending())["claimed"] == 0

    later = OutboxPublisher(
        fake_bus,
        session_factory,
        max_retries=5,
        retry_policy=ExponentialBackoffPolicy(base_seconds=60),
        clock=lambda: utcnow() + timedelta(minutes=2),
    )
    fake_bus.fail = False
    assert (await later.publish_pending())["sent"] == 1


@pytest.mark.anyio
async def test_pending_rows_survive_publisher_restart(fake_bus, session_factory, state_machine, db_session, media_factory):
    """
    ✅ Events committed while no publisher ran are delivered by a new instance.
    ✅ A failed delivery after a successful XADD shows up again (at-least-once).
    """
    media = await _validated(state_machine, db_session, media_factory)

    class FlakyAckBus:
        """Accepts the message but loses the acknowledgement."""

        def __init__(self):
            self.seen = []

        async def publish(self, subject, data):
            self.seen.append(json.loads(data)["media_id"])
            raise TimeoutError("ack lost")

    flaky = FlakyAckBus()
    await OutboxPublisher(flaky, session_factory, max_retries=3).publish_pending()
    assert flaky.seen == [str(media.id)]

    restarted = OutboxPublisher(fake_bus, session_factory, max_retries=3)
    assert (await restarted.publish_pending())["sent"] == 1
    assert fake_bus.published[0][1]["media_id"] == str(media.id)


# ──────────────────────────────────────────────────────────────────────
# Cleanup
# ──────────────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_clean_sent_respects_retention(fake_bus, session_factory, state_machine, db_session, media_factory):
    await _validated(state_machine, db_session, media_factory)
    await _validated(state_machine, db_session, media_factory)

    publisher = OutboxPublisher(fake_bus, session_factory, retention=timedelta(hours=1))
    await publisher.publish_pending()

    # one row stays PENDING: never purged
    await _validated(state_machine, db_session, media_factory)

    assert await publisher.clean_sent() == 0

    later = OutboxPublisher(fake_bus, session_factory, retention=timedelta(hours=1), clock=lambda: utcnow() + timedelta(hours=2))
    assert await later.clean_sent() == 2

    async with session_factory() as db:
        remaining = (await db.execute(select(OutboxEvent.status))).scalars().all()
    assert remaining == [OutboxStatus.PENDING]


# ──────────────────────────────────────────────────────────────────────
# Redis Streams bus
# ──────────────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_redis_stream_bus_appends_entry(redis_client, session_factory, state_machine, db_session, media_factory):
    """
    ✅ The real bus XADDs the serialized payload under the `data` field.
    """
    media = await _validated(state_machine, db_session, media_factory)
    publisher = OutboxPublisher(RedisStreamBus(), session_factory)

    assert (await publisher.publish_pending())["sent"] == 1
    assert await redis_client.xlen("media.transcode.requested") == 1

    async with session_factory() as db:
        count = (await db.execute(
            select(func.count()).select_from(OutboxEvent).where(OutboxEvent.status == OutboxStatus.SENT)
        )).scalar_one()
    assert count == 1

    payload = json.loads(serialize_payload({"media_id": str(media.id)}))
    assert payload == {"media_id": str(media.id)}
