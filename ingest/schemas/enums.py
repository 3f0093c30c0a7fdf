from __future__ import annotations

"""
Central enum definitions used across BBMovie Ingest.

Design notes
------------
• All enums subclass `str, PyEnum` for JSON-friendly serialization.
• VALUE STRINGS are **stable** once deployed (DB enums depend on them).
• Grouped by domain; keep `__all__` in sync when adding new enums.
"""

from enum import Enum as PyEnum
from typing import FrozenSet


# ──────────────────────────────────────────────────────────────
# Media lifecycle
# ──────────────────────────────────────────────────────────────
class MediaStatus(str, PyEnum):
    """Authoritative status of a MediaFile (see `services.media_state`)."""
    INITIATED = "INITIATED"
    UPLOADED = "UPLOADED"
    VALIDATED = "VALIDATED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    MALWARE_DETECTED = "MALWARE_DETECTED"
    INVALID_FILE = "INVALID_FILE"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    DELETED = "DELETED"


FAILURE_STATUSES: FrozenSet[MediaStatus] = frozenset({
    MediaStatus.REJECTED,
    MediaStatus.MALWARE_DETECTED,
    MediaStatus.INVALID_FILE,
    MediaStatus.FAILED,
    MediaStatus.EXPIRED,
})
TERMINAL_STATUSES: FrozenSet[MediaStatus] = FAILURE_STATUSES | {MediaStatus.COMPLETED, MediaStatus.DELETED}

# Rows a new upload may be deduplicated onto (live or successfully finished).
DEDUP_ELIGIBLE_STATUSES: FrozenSet[MediaStatus] = frozenset({
    MediaStatus.UPLOADED,
    MediaStatus.VALIDATED,
    MediaStatus.PROCESSING,
    MediaStatus.COMPLETED,
})
# Rows holding the checksum slot of the unique dedup index (includes the
# INITIATED row written at completion, before its first transition).
DEDUP_INDEX_STATUSES: FrozenSet[MediaStatus] = DEDUP_ELIGIBLE_STATUSES | {MediaStatus.INITIATED}


class ChunkStatus(str, PyEnum):
    """Per-part upload state tracked by the chunk tracker."""
    PENDING = "PENDING"
    UPLOADED = "UPLOADED"
    FAILED = "FAILED"


class OutboxStatus(str, PyEnum):
    """Delivery state of an outbox row."""
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"  # dead-lettered; needs a manual requeue


class OutboxEventType(str, PyEnum):
    """Domain events emitted through the outbox; value doubles as the bus subject."""
    TRANSCODE_REQUESTED = "media.transcode.requested"
    MEDIA_COMPLETED = "media.status.completed"
    MEDIA_FAILED = "media.status.failed"


# ──────────────────────────────────────────────────────────────
# Uploads
# ──────────────────────────────────────────────────────────────
class StorageProvider(str, PyEnum):
    S3 = "S3"


_VIDEO_MIME_TYPES: FrozenSet[str] = frozenset({
    "video/mp4",
    "video/quicktime",
    "video/x-matroska",
    "video/webm",
    "video/x-msvideo",
    "video/mp2t",
})
_IMAGE_MIME_TYPES: FrozenSet[str] = frozenset({
    "image/jpeg",
    "image/png",
    "image/webp",
})


class UploadPurpose(str, PyEnum):
    """Why a file is uploaded; drives the MIME allow-list and key prefix."""
    MOVIE_SOURCE = "MOVIE_SOURCE"
    MOVIE_TRAILER = "MOVIE_TRAILER"
    MOVIE_POSTER = "MOVIE_POSTER"
    USER_AVATAR = "USER_AVATAR"

    @property
    def allowed_mime_types(self) -> FrozenSet[str]:
        if self in (UploadPurpose.MOVIE_SOURCE, UploadPurpose.MOVIE_TRAILER):
            return _VIDEO_MIME_TYPES
        return _IMAGE_MIME_TYPES

    def allows(self, mime_type: str | None) -> bool:
        return (mime_type or "").split(";")[0].strip().lower() in self.allowed_mime_types


class ScanVerdict(str, PyEnum):
    """Virus scanner outcome."""
    CLEAN = "CLEAN"
    INFECTED = "INFECTED"


__all__ = [
    "MediaStatus",
    "ChunkStatus",
    "OutboxStatus",
    "OutboxEventType",
    "StorageProvider",
    "UploadPurpose",
    "ScanVerdict",
    "FAILURE_STATUSES",
    "TERMINAL_STATUSES",
    "DEDUP_ELIGIBLE_STATUSES",
    "DEDUP_INDEX_STATUSES",
]
