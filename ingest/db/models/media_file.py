from __future__ import annotations

"""
🎞️ BBMovie Ingest: MediaFile (durable record of one logical asset)
===================================================================

Created when an upload session completes; from then on mutated **only**
through compare-and-swap transitions in `ingest.services.media_state`.
Never physically removed: deletion is the DELETED status.

Design highlights
-----------------
• **Dedup slot**: a partial unique index on `checksum` over live statuses makes
  "insert if absent, else return existing" a single conditional write.
• `sparse_checksum` (leading sample hash) backs the early duplicate hint.
• `status_reason` records which check failed for terminal failure states.
• `probe` keeps the metadata extracted by the transcode worker.
"""

from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    Enum as SAEnum,
    Index,
    String,
    Uuid,
    text,
)

from ingest.db.base_class import Base, JSONType, TimestampMixin
from ingest.schemas.enums import DEDUP_INDEX_STATUSES, MediaStatus, StorageProvider, UploadPurpose

_LIVE_CHECKSUM_WHERE = text(
    "status IN ({})".format(", ".join(f"'{s.value}'" for s in sorted(DEDUP_INDEX_STATUSES, key=lambda s: s.value)))
)


# ──────────────────────────────────────────────────────────────
# 📦 Model: MediaFile
# ──────────────────────────────────────────────────────────────
class MediaFile(TimestampMixin, Base):
    """Logical media asset tracked from intake through terminal states."""

    __tablename__ = "media_file"

    # ── Identity ──────────────────────────────────────────────
    id = Column(Uuid(), primary_key=True, default=uuid4)
    upload_id = Column(String(64), nullable=False, unique=True, comment="Session that produced this file")
    user_id = Column(String(64), nullable=False, index=True)
    purpose = Column(SAEnum(UploadPurpose, name="upload_purpose"), nullable=False)

    # ── Storage ───────────────────────────────────────────────
    storage_provider = Column(
        SAEnum(StorageProvider, name="storage_provider"),
        nullable=False,
        default=StorageProvider.S3,
    )
    bucket = Column(String(255), nullable=False)
    object_key = Column(String(1024), nullable=False)
    original_filename = Column(String(512), nullable=True)
    mime_type = Column(String(127), nullable=True)
    size_bytes = Column(BigInteger, nullable=True)

    # ── Content identity ──────────────────────────────────────
    checksum = Column(String(64), nullable=True, comment="SHA-256 (hex) of the full object")
    sparse_checksum = Column(String(64), nullable=True, index=True, comment="SHA-256 (hex) of the leading sample")

    # ── State ─────────────────────────────────────────────────
    status = Column(
        SAEnum(MediaStatus, name="media_status"),
        nullable=False,
        default=MediaStatus.INITIATED,
        index=True,
    )
    status_reason = Column(String(512), nullable=True, comment="Which check failed (terminal failures)")
    probe = Column(JSONType, nullable=True, comment="Probe metadata reported by the worker")

    __mapper_args__ = {"eager_defaults": True}

    __table_args__ = (
        CheckConstraint("(size_bytes IS NULL) OR (size_bytes >= 0)", name="size_nonneg"),
        Index(
            "uq_media_file_live_checksum",
            "checksum",
            unique=True,
            postgresql_where=_LIVE_CHECKSUM_WHERE,
            sqlite_where=_LIVE_CHECKSUM_WHERE,
        ),
        Index("ix_media_file_checksum", "checksum"),
        Index("ix_media_file_status_updated", "status", "updated_at"),
    )
