from __future__ import annotations

"""
📮 BBMovie Ingest: OutboxEvent (transactional outbox)
=====================================================

One row per emitted domain event, written in the **same transaction** as the
MediaFile status change that produced it. The publisher sweep claims PENDING
rows (`FOR UPDATE SKIP LOCKED`), delivers them to the bus, and marks them SENT
or bumps `retry_count` (FAILED once the ceiling is hit). SENT rows are purged
after a retention window.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    Enum as SAEnum,
    Index,
    Integer,
    String,
    Text,
    text,
)

from ingest.db.base_class import BigIntPK, Base, JSONType, UTCDateTime, utcnow
from ingest.schemas.enums import OutboxStatus


class OutboxEvent(Base):
    """Pending/sent/dead-lettered domain event."""

    __tablename__ = "outbox_event"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    aggregate_id = Column(String(64), nullable=False, index=True, comment="MediaFile id this event concerns")
    event_type = Column(String(64), nullable=False)
    subject = Column(String(255), nullable=False, comment="Bus subject / stream name")
    payload = Column(JSONType, nullable=False)

    status = Column(
        SAEnum(OutboxStatus, name="outbox_status"),
        nullable=False,
        default=OutboxStatus.PENDING,
        server_default=OutboxStatus.PENDING.value,
    )
    retry_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    last_error = Column(Text, nullable=True)
    last_attempt_at = Column(UTCDateTime(), nullable=True)
    sent_at = Column(UTCDateTime(), nullable=True)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("retry_count >= 0", name="retry_count_nonneg"),
        Index("ix_outbox_event_status_created", "status", "created_at"),
        Index("ix_outbox_event_status_sent", "status", "sent_at"),
    )
