from __future__ import annotations

"""
🧩 BBMovie Ingest: ChunkUploadStatus (per-part bookkeeping)
===========================================================

One row per `(upload_id, part_number)`. Rows are created PENDING when the
session opens, flipped to UPLOADED by completion callbacks (last write wins),
and bulk-deleted when the parent session is finalized, aborted or expired.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)

from ingest.db.base_class import Base, UTCDateTime, utcnow
from ingest.schemas.enums import ChunkStatus


class ChunkUploadStatus(Base):
    """Upload state of one part of a multipart upload."""

    __tablename__ = "chunk_upload_status"

    upload_id = Column(
        String(64),
        ForeignKey("upload_session.upload_id", ondelete="CASCADE"),
        primary_key=True,
    )
    part_number = Column(Integer, primary_key=True, autoincrement=False)

    status = Column(
        SAEnum(ChunkStatus, name="chunk_status"),
        nullable=False,
        default=ChunkStatus.PENDING,
        server_default=ChunkStatus.PENDING.value,
    )
    etag = Column(String(255), nullable=True, comment="Blob store ETag / part checksum")
    retry_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    last_error = Column(String(512), nullable=True)
    uploaded_at = Column(UTCDateTime(), nullable=True)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("part_number >= 1", name="part_number_positive"),
        CheckConstraint("retry_count >= 0", name="retry_count_nonneg"),
        Index("ix_chunk_upload_status_upload_status", "upload_id", "status"),
    )
