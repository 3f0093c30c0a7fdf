from __future__ import annotations

"""
📤 BBMovie Ingest: UploadSession (one multipart upload attempt)
===============================================================

Represents one in-progress **multipart upload** opened by a client. Distinct
from the final `MediaFile`: a session is bookkeeping for bytes in flight and is
finalized (or expired/aborted) by the upload session manager.

Design highlights
-----------------
• `upload_id` is our opaque public id; `provider_upload_id` is the blob
  store's multipart id and never leaves the service.
• Part geometry (`part_size`, `part_count`) is fixed at open time so the gap
  check never trusts a client-supplied count.
• `expires_at` drives the expiry sweep; `completed` + `media_file_id` make
  completion idempotent (and record the dedup link).
• `provider_completed_at` is committed as soon as the provider stitches the
  object: its multipart id is spent from then on, so a retried completion
  skips the provider call and cleanup deletes the object instead.
"""

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    Enum as SAEnum,
    Index,
    Integer,
    String,
    Uuid,
    text,
)

from ingest.db.base_class import Base, TimestampMixin, UTCDateTime
from ingest.schemas.enums import UploadPurpose


class UploadSession(TimestampMixin, Base):
    """Multipart upload slot owned by a user until completion or expiry."""

    __tablename__ = "upload_session"

    # ── Identity ──────────────────────────────────────────────
    upload_id = Column(String(64), primary_key=True, comment="Opaque public upload id")
    user_id = Column(String(64), nullable=False, index=True, comment="Owning user (from gateway)")

    # ── Target object ─────────────────────────────────────────
    purpose = Column(SAEnum(UploadPurpose, name="upload_purpose"), nullable=False)
    bucket = Column(String(255), nullable=False)
    object_key = Column(String(1024), nullable=False, unique=True, comment="Final object key in the blob store")
    content_type = Column(String(127), nullable=False)
    original_filename = Column(String(512), nullable=True)
    provider_upload_id = Column(String(1024), nullable=False, comment="Blob store multipart upload id")

    # ── Geometry ──────────────────────────────────────────────
    expected_size = Column(BigInteger, nullable=False)
    part_size = Column(BigInteger, nullable=False)
    part_count = Column(Integer, nullable=False)

    # ── Client-declared hashes (verified server-side at completion) ──
    checksum = Column(String(64), nullable=True, comment="Client-declared SHA-256 (hex)")
    sparse_checksum = Column(String(64), nullable=True, index=True, comment="SHA-256 of the leading sample")

    # ── Lifecycle ─────────────────────────────────────────────
    expires_at = Column(UTCDateTime(), nullable=False)
    completed = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    completed_at = Column(UTCDateTime(), nullable=True)
    media_file_id = Column(Uuid(), nullable=True, index=True, comment="Resulting (or deduplicated) MediaFile")

    # ── Provider finalization (set once the parts are stitched) ──
    provider_completed_at = Column(UTCDateTime(), nullable=True, comment="Provider multipart upload finalized")
    stitched_size = Column(BigInteger, nullable=True, comment="Object size reported after finalization")

    __mapper_args__ = {"eager_defaults": True}

    __table_args__ = (
        CheckConstraint("expected_size > 0", name="expected_size_positive"),
        CheckConstraint("part_size > 0", name="part_size_positive"),
        CheckConstraint("part_count >= 1", name="part_count_positive"),
        Index("ix_upload_session_open_expiry", "completed", "expires_at"),
    )

    @property
    def last_part_size(self) -> int:
        """Size of the final part (the only one allowed to be short)."""
        return int(self.expected_size) - (int(self.part_count) - 1) * int(self.part_size)
