from __future__ import annotations

"""
Validation runner: turns collaborator verdicts into media transitions.

For a file at UPLOADED:

1) Content-type detector → not in the purpose allow-list → INVALID_FILE.
2) Virus scanner → INFECTED → MALWARE_DETECTED, CLEAN → VALIDATED
   (which stages `media.transcode.requested` in the outbox).

A collaborator outage leaves the file UPLOADED for the next sweep; rejected
objects are removed from the blob store best-effort. The runner owns its
session's transactions (reads are committed before collaborators are
called, so no transaction is held open across network I/O).
"""

import logging
from typing import Dict, List, Optional, Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ingest.core.exceptions import StaleStateError
from ingest.db.models import MediaFile
from ingest.schemas.enums import MediaStatus, ScanVerdict
from ingest.services.media_state import MediaStateMachine
from ingest.utils.aws import BlobStore

logger = logging.getLogger(__name__)

_SNIFF_BYTES = 64
_SWEEP_LIMIT = 100


class VirusScanner(Protocol):
    async def scan(self, bucket: str, key: str) -> ScanVerdict: ...


class ContentTypeDetector(Protocol):
    async def detect(self, bucket: str, key: str) -> Optional[str]: ...


# ─────────────────────────────────────────────────────────────
# Default collaborators
# ─────────────────────────────────────────────────────────────
def _sniff(head: bytes) -> Optional[str]:
    """Leading-bytes signature match for the formats uploads accept."""
    if head.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "image/webp"
    if head[:4] == b"RIFF" and head[8:12] == b"AVI ":
        return "video/x-msvideo"
    if head.startswith(b"\x1a\x45\xdf\xa3"):
        return "video/webm" if b"webm" in head else "video/x-matroska"
    if head[4:8] == b"ftyp":
        return "video/quicktime" if head[8:10] == b"qt" else "video/mp4"
    if head[:1] == b"\x47" and len(head) > 188 and head[188:189] == b"\x47":
        return "video/mp2t"
    return None


class SignatureContentTypeDetector:
    """Reads the object's first bytes through the blob store and matches signatures."""

    def __init__(self, blob: BlobStore, *, sniff_bytes: int = 256) -> None:
        self.blob = blob
        self.sniff_bytes = max(_SNIFF_BYTES, int(sniff_bytes))

    async def detect(self, bucket: str, key: str) -> Optional[str]:
        head = await self.blob.read_range(key, 0, self.sniff_bytes - 1)
        return _sniff(head)


class DisabledVirusScanner:
    """Scanner used when no AV backend is configured: every object is CLEAN."""

    async def scan(self, bucket: str, key: str) -> ScanVerdict:
        return ScanVerdict.CLEAN


# ─────────────────────────────────────────────────────────────
# Runner
# ─────────────────────────────────────────────────────────────
class MediaValidator:
    def __init__(
        self,
        scanner: VirusScanner,
        detector: ContentTypeDetector,
        *,
        state: Optional[MediaStateMachine] = None,
        blob: Optional[BlobStore] = None,
    ) -> None:
        self.scanner = scanner
        self.detector = detector
        self.blob = blob
        self.state = state or MediaStateMachine(blob)

    async def validate(self, db: AsyncSession, media_id: UUID) -> Optional[MediaFile]:
        """
        Validate one UPLOADED file.

        Returns the row after its transition; the unchanged row when it is not
        UPLOADED; None when a collaborator failed or another writer won.
        """
        media = await self.state.get_status(db, media_id)
        await db.commit()
        if media.status != MediaStatus.UPLOADED:
            return media

        try:
            detected = await self.detector.detect(media.bucket, media.object_key)
        except Exception as e:  # noqa: BLE001
            logger.warning("Content-type detection unavailable for media %s: %s", media_id, e)
            return None

        target, reason = MediaStatus.VALIDATED, None
        if not media.purpose.allows(detected):
            target = MediaStatus.INVALID_FILE
            reason = f"content type {detected or 'unknown'} not allowed for {media.purpose.value}"
        else:
            try:
                verdict = await self.scanner.scan(media.bucket, media.object_key)
            except Exception as e:  # noqa: BLE001
                logger.warning("Virus scan unavailable for media %s: %s", media_id, e)
                return None
            if verdict == ScanVerdict.INFECTED:
                target, reason = MediaStatus.MALWARE_DETECTED, "virus scan: infected"

        try:
            media = await self.state.transition(db, media_id, MediaStatus.UPLOADED, target, reason=reason)
        except StaleStateError as e:
            logger.info("Validation of media %s skipped: status moved to %s", media_id, getattr(e.actual, "value", e.actual))
            return None

        if target != MediaStatus.VALIDATED and self.blob is not None:
            await self.blob.delete(media.object_key)
        return media

    async def validate_pending(self, db: AsyncSession, *, limit: int = _SWEEP_LIMIT) -> Dict[str, int]:
        """Sweep UPLOADED files oldest first; returns counts per resulting status."""
        ids: List[UUID] = list(
            (
                await db.execute(
                    select(MediaFile.id)
                    .where(MediaFile.status == MediaStatus.UPLOADED)
                    .order_by(MediaFile.updated_at.asc())
                    .limit(limit)
                )
            ).scalars().all()
        )
        await db.commit()

        summary: Dict[str, int] = {}
        for media_id in ids:
            try:
                media = await self.validate(db, media_id)
            except Exception:
                logger.exception("Validation crashed for media %s", media_id)
                continue
            key = media.status.value if media is not None else "skipped"
            summary[key] = summary.get(key, 0) + 1
        if ids:
            logger.info("Validation sweep: %s", summary)
        return summary

    async def validate_detached(self, session_factory: async_sessionmaker[AsyncSession], media_id: UUID) -> None:
        """Background-task entry point: fresh session, errors logged."""
        try:
            async with session_factory() as db:
                await self.validate(db, media_id)
        except Exception:
            logger.exception("Background validation failed for media %s", media_id)


__all__ = [
    "VirusScanner",
    "ContentTypeDetector",
    "SignatureContentTypeDetector",
    "DisabledVirusScanner",
    "MediaValidator",
]
