from __future__ import annotations

"""
BBMovie Ingest: Upload Session Manager (async, S3 multipart)
=============================================================

Owns the lifecycle of one multipart upload: open → parts recorded →
complete (or abort / expire). Bytes never pass through this service; the
client PUTs each part to a presigned URL and reports the part's ETag back.

Flow
----
1) `open_session`      : validate geometry, start the provider multipart
                         upload, persist the session + PENDING chunk rows,
                         hand out the first batch of part URLs.
2) `record_part_uploaded` : idempotent per-part UPLOADED upsert.
3) `complete_session`  : gap check against `1..part_count` (re-read at call
                         time), provider complete, size + checksum
                         verification, dedup insert-or-link, INITIATED →
                         UPLOADED in one transaction.
4) `abort_session` / `expire_sessions` : release provider parts, drop rows.

Security & privacy
------------------
- Sessions are owner-scoped: a `user_id` mismatch is reported as not found.
- Presigned URLs are returned to the caller only, never logged.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import mimetypes
import re
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ingest.core.config import settings
from ingest.core.exceptions import (
    BlobStoreError,
    ChecksumMismatch,
    IncompleteUpload,
    InvalidRequest,
    SessionExpired,
    SessionNotFound,
)
from ingest.db.base_class import utcnow
from ingest.db.models import ChunkUploadStatus, MediaFile, UploadSession
from ingest.repositories.chunks import ChunkStatusTracker
from ingest.schemas.enums import ChunkStatus, MediaStatus, StorageProvider, UploadPurpose
from ingest.services.checksum import digest_stream, normalize_hex_digest
from ingest.services.dedup import DeduplicationIndex
from ingest.services.media_state import MediaStateMachine
from ingest.utils.aws import BlobStore

logger = logging.getLogger(__name__)

_SHA256_HEX = re.compile(r"^[0-9a-f]{64}$")
_EXPIRY_SWEEP_LIMIT = 500

_EXTENSION_OVERRIDES: Dict[str, str] = {
    "video/mp4": "mp4",
    "video/quicktime": "mov",
    "video/x-matroska": "mkv",
    "video/webm": "webm",
    "video/x-msvideo": "avi",
    "video/mp2t": "ts",
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}


# ─────────────────────────────────────────────────────────────
# 📦 Value objects
# ─────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class PartUrl:
    part_number: int
    url: str
    start_byte: int
    end_byte: int


@dataclass(frozen=True)
class OpenedSession:
    session: UploadSession
    parts: List[PartUrl]


@dataclass(frozen=True)
class UploadProgress:
    upload_id: str
    total_parts: int
    uploaded_parts: int
    failed_parts: int
    pending_parts: int
    uploaded_bytes: int
    percent: float
    completed: bool
    part_statuses: Dict[int, str]


# ─────────────────────────────────────────────────────────────
# 🔧 Helpers
# ─────────────────────────────────────────────────────────────
def part_count_for(expected_size: int, part_size: int) -> int:
    """Ceiling division; one part minimum."""
    return max(1, -(-int(expected_size) // int(part_size)))


def _require_digest(value: Optional[str], field: str) -> Optional[str]:
    digest = normalize_hex_digest(value)
    if digest is not None and not _SHA256_HEX.match(digest):
        raise InvalidRequest(f"{field} must be a hex SHA-256 digest", details={"field": field})
    return digest


def extension_for(content_type: str, filename: Optional[str] = None) -> str:
    ct = (content_type or "").split(";")[0].strip().lower()
    ext = _EXTENSION_OVERRIDES.get(ct)
    if ext:
        return ext
    if filename and "." in filename:
        return filename.rsplit(".", 1)[-1].lower()[:10]
    guessed = mimetypes.guess_extension(ct) or ".bin"
    return guessed.lstrip(".")


def build_object_key(
    purpose: UploadPurpose,
    user_id: str,
    content_type: str,
    filename: Optional[str] = None,
) -> str:
    """`uploads/<purpose>/<user_id>/<uuid>.<ext>`; content type must fit the purpose."""
    if not purpose.allows(content_type):
        raise InvalidRequest(
            f"Content type {content_type!r} not allowed for {purpose.value}",
            details={"allowed": sorted(purpose.allowed_mime_types)},
        )
    return f"uploads/{purpose.value.lower()}/{user_id}/{uuid4().hex}.{extension_for(content_type, filename)}"


# ─────────────────────────────────────────────────────────────
# 🧭 Manager
# ─────────────────────────────────────────────────────────────
class UploadSessionManager:
    """Multipart upload lifecycle on top of the chunk tracker and blob store."""

    def __init__(
        self,
        blob: BlobStore,
        *,
        bucket: Optional[str] = None,
        tracker: Optional[ChunkStatusTracker] = None,
        dedup: Optional[DeduplicationIndex] = None,
        state: Optional[MediaStateMachine] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.blob = blob
        self.bucket = bucket or getattr(blob, "bucket", None) or settings.AWS_BUCKET_NAME
        self.tracker = tracker or ChunkStatusTracker()
        self.dedup = dedup or DeduplicationIndex()
        self.state = state or MediaStateMachine(blob)
        self._clock = clock

    # ── [Internal] session access ─────────────────────────────
    async def _load(self, db: AsyncSession, upload_id: str, *, user_id: Optional[str] = None) -> UploadSession:
        session = await db.get(UploadSession, upload_id, populate_existing=True)
        if session is None or (user_id is not None and session.user_id != user_id):
            raise SessionNotFound(upload_id)
        return session

    def _ensure_open(self, session: UploadSession) -> None:
        if session.completed:
            raise InvalidRequest("Upload already completed", details={"upload_id": session.upload_id})
        if session.expires_at <= self._clock():
            raise SessionExpired(session.upload_id)

    def _check_part_number(self, session: UploadSession, part_number: int) -> int:
        n = int(part_number)
        if n < 1 or n > int(session.part_count):
            raise InvalidRequest(
                f"Part number {n} out of range 1..{session.part_count}",
                details={"part_number": n, "part_count": session.part_count},
            )
        return n

    async def _part_url(self, session: UploadSession, part_number: int) -> PartUrl:
        url = await self.blob.presign_part(
            session.object_key,
            session.provider_upload_id,
            part_number,
            expires_in=settings.UPLOAD_PRESIGN_TTL_SECONDS,
        )
        start = (part_number - 1) * int(session.part_size)
        end = min(start + int(session.part_size), int(session.expected_size)) - 1
        return PartUrl(part_number=part_number, url=url, start_byte=start, end_byte=end)

    # ─────────────────────────────────────────────────────────
    # Open
    # ─────────────────────────────────────────────────────────
    async def open_session(
        self,
        db: AsyncSession,
        *,
        user_id: str,
        target_key: str,
        expected_size: int,
        part_size: int,
        purpose: UploadPurpose,
        content_type: str,
        original_filename: Optional[str] = None,
        checksum: Optional[str] = None,
        sparse_checksum: Optional[str] = None,
    ) -> OpenedSession:
        """
        Create an upload session and return URLs for its first parts.

        At most `UPLOAD_PRESIGN_BATCH_MAX` URLs are returned; the rest are
        fetched with `presign_part_batch`.
        """
        # ── [Step 1] Validate geometry and declared hashes ───────
        expected_size, part_size = int(expected_size), int(part_size)
        if expected_size <= 0:
            raise InvalidRequest("expected_size must be positive")
        if expected_size > settings.UPLOAD_MAX_BYTES:
            raise InvalidRequest(
                "expected_size exceeds the upload limit",
                details={"max_bytes": settings.UPLOAD_MAX_BYTES},
            )
        if part_size <= 0:
            raise InvalidRequest("part_size must be positive")
        part_count = part_count_for(expected_size, part_size)
        if part_count > 1 and part_size < settings.UPLOAD_MIN_PART_BYTES:
            raise InvalidRequest(
                "part_size below the provider minimum",
                details={"min_part_bytes": settings.UPLOAD_MIN_PART_BYTES},
            )
        if part_count > settings.UPLOAD_MAX_PARTS:
            raise InvalidRequest(
                "Too many parts; increase part_size",
                details={"part_count": part_count, "max_parts": settings.UPLOAD_MAX_PARTS},
            )
        if not purpose.allows(content_type):
            raise InvalidRequest(f"Content type {content_type!r} not allowed for {purpose.value}")
        checksum = _require_digest(checksum, "checksum")
        sparse_checksum = _require_digest(sparse_checksum, "sparse_checksum")
        key = (target_key or "").strip().lstrip("/")
        if not key:
            raise InvalidRequest("target_key is required")

        # ── [Step 2] Start the provider multipart upload ─────────
        provider_upload_id = await self.blob.create_multipart_upload(key, content_type=content_type)

        # ── [Step 3] Persist session + PENDING chunk rows ────────
        now = self._clock()
        session = UploadSession(
            upload_id=uuid4().hex,
            user_id=user_id,
            purpose=purpose,
            bucket=self.bucket,
            object_key=key,
            content_type=content_type,
            original_filename=original_filename,
            provider_upload_id=provider_upload_id,
            expected_size=expected_size,
            part_size=part_size,
            part_count=part_count,
            checksum=checksum,
            sparse_checksum=sparse_checksum,
            expires_at=now + timedelta(hours=settings.UPLOAD_SESSION_TTL_HOURS),
            completed=False,
        )
        try:
            tx = db.begin_nested() if db.in_transaction() else db.begin()
            async with tx:
                db.add(session)
                await db.flush()
                await self.tracker.initialize(db, session.upload_id, part_count)
        except Exception:
            try:
                await self.blob.abort_multipart_upload(key, provider_upload_id)
            except BlobStoreError as e:
                logger.warning("Abort after failed session insert also failed: %s", e)
            raise

        # ── [Step 4] First batch of part URLs ────────────────────
        first = min(part_count, settings.UPLOAD_PRESIGN_BATCH_MAX)
        parts = [await self._part_url(session, n) for n in range(1, first + 1)]

        logger.info(
            "Upload session %s opened: user=%s parts=%s size=%s purpose=%s",
            session.upload_id, user_id, part_count, expected_size, purpose.value,
        )
        return OpenedSession(session=session, parts=parts)

    # ─────────────────────────────────────────────────────────
    # Parts
    # ─────────────────────────────────────────────────────────
    async def record_part_uploaded(
        self,
        db: AsyncSession,
        upload_id: str,
        part_number: int,
        etag: str,
        *,
        user_id: Optional[str] = None,
    ) -> None:
        """Mark one part UPLOADED. Re-recording the same part is a no-op success."""
        etag = (etag or "").strip()
        if not etag:
            raise InvalidRequest("etag is required")
        tx = db.begin_nested() if db.in_transaction() else db.begin()
        async with tx:
            session = await self._load(db, upload_id, user_id=user_id)
            n = self._check_part_number(session, part_number)
            if session.completed:
                return
            if session.expires_at <= self._clock():
                raise SessionExpired(upload_id)
            await self.tracker.upsert(db, upload_id, n, ChunkStatus.UPLOADED, etag)
        logger.debug("Upload %s: part %s recorded", upload_id, n)

    async def presign_part_batch(
        self,
        db: AsyncSession,
        upload_id: str,
        from_part: int,
        to_part: int,
        *,
        user_id: Optional[str] = None,
    ) -> List[PartUrl]:
        """Re-issue URLs for parts `from_part..to_part` (inclusive)."""
        session = await self._load(db, upload_id, user_id=user_id)
        self._ensure_open(session)
        lo, hi = int(from_part), int(to_part)
        if lo < 1 or hi > int(session.part_count) or lo > hi:
            raise InvalidRequest(
                f"Invalid part range {lo}-{hi} (valid 1-{session.part_count})",
                details={"from_part": lo, "to_part": hi, "part_count": session.part_count},
            )
        if hi - lo + 1 > settings.UPLOAD_PRESIGN_BATCH_MAX:
            raise InvalidRequest(
                "Part range too large",
                details={"max_batch": settings.UPLOAD_PRESIGN_BATCH_MAX},
            )
        return [await self._part_url(session, n) for n in range(lo, hi + 1)]

    async def mark_part_failed(
        self,
        db: AsyncSession,
        upload_id: str,
        part_number: int,
        reason: Optional[str] = None,
        *,
        user_id: Optional[str] = None,
    ) -> int:
        """Record a client-reported part failure; returns the part's failure count."""
        tx = db.begin_nested() if db.in_transaction() else db.begin()
        async with tx:
            session = await self._load(db, upload_id, user_id=user_id)
            self._ensure_open(session)
            n = self._check_part_number(session, part_number)
            failures = await self.tracker.record_failure(db, upload_id, n, reason)
        logger.warning("Upload %s: part %s failed (%s so far): %s", upload_id, n, failures, reason or "-")
        return failures

    async def retry_part(
        self,
        db: AsyncSession,
        upload_id: str,
        part_number: int,
        *,
        user_id: Optional[str] = None,
    ) -> PartUrl:
        """Fresh URL for a failed part, up to `CHUNK_MAX_RETRIES` retries."""
        tx = db.begin_nested() if db.in_transaction() else db.begin()
        async with tx:
            session = await self._load(db, upload_id, user_id=user_id)
            self._ensure_open(session)
            n = self._check_part_number(session, part_number)
            row = await self.tracker.get(db, upload_id, n)
            failures = int(row.retry_count) if row is not None else 0
            if failures > settings.CHUNK_MAX_RETRIES:
                raise InvalidRequest(
                    f"Part {n} exceeded max retries ({settings.CHUNK_MAX_RETRIES})",
                    details={"part_number": n, "retry_count": failures},
                )
            await self.tracker.reset_to_pending(db, upload_id, [n])
            part = await self._part_url(session, n)
        logger.info("Upload %s: retry URL issued for part %s", upload_id, n)
        return part

    # ─────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────
    async def get_session(self, db: AsyncSession, upload_id: str, *, user_id: Optional[str] = None) -> UploadSession:
        return await self._load(db, upload_id, user_id=user_id)

    async def get_progress(self, db: AsyncSession, upload_id: str, *, user_id: Optional[str] = None) -> UploadProgress:
        session = await self._load(db, upload_id, user_id=user_id)
        rows = await self.tracker.list_by_upload(db, upload_id)
        total = int(session.part_count)

        if session.completed:
            statuses = {n: ChunkStatus.UPLOADED.value for n in range(1, total + 1)}
        else:
            statuses = {int(r.part_number): ChunkStatus(r.status).value for r in rows}
        uploaded_numbers = [n for n, s in statuses.items() if s == ChunkStatus.UPLOADED.value]
        failed = sum(1 for s in statuses.values() if s == ChunkStatus.FAILED.value)
        uploaded = len(uploaded_numbers)
        uploaded_bytes = sum(
            session.last_part_size if n == total else int(session.part_size) for n in uploaded_numbers
        )
        return UploadProgress(
            upload_id=upload_id,
            total_parts=total,
            uploaded_parts=uploaded,
            failed_parts=failed,
            pending_parts=total - uploaded - failed,
            uploaded_bytes=uploaded_bytes,
            percent=round(uploaded * 100.0 / total, 2) if total else 0.0,
            completed=bool(session.completed),
            part_statuses=statuses,
        )

    # ─────────────────────────────────────────────────────────
    # Early duplicate hint
    # ─────────────────────────────────────────────────────────
    async def check_duplicate_hint(
        self,
        db: AsyncSession,
        upload_id: str,
        sparse_checksum: str,
        *,
        user_id: Optional[str] = None,
    ) -> Optional[MediaFile]:
        """Store the client's sparse checksum; return a likely duplicate (advisory)."""
        digest = _require_digest(sparse_checksum, "sparse_checksum")
        if digest is None:
            raise InvalidRequest("sparse_checksum is required")
        tx = db.begin_nested() if db.in_transaction() else db.begin()
        async with tx:
            session = await self._load(db, upload_id, user_id=user_id)
            self._ensure_open(session)
            session.sparse_checksum = digest
            match = await self.dedup.lookup_by_sparse_checksum(db, digest)
        if match is not None:
            logger.info("Upload %s: likely duplicate of media %s", upload_id, match.id)
        return match

    # ─────────────────────────────────────────────────────────
    # Complete
    # ─────────────────────────────────────────────────────────
    async def complete_session(
        self,
        db: AsyncSession,
        upload_id: str,
        *,
        user_id: Optional[str] = None,
    ) -> MediaFile:
        """
        Finalize the upload and return its MediaFile.

        A duplicate of live content returns the existing MediaFile (whose
        `upload_id` differs from this one) and stores nothing new. Calling
        again after success returns the same MediaFile.

        The provider stitch is recorded on the session in its own commit, so
        a completion that fails afterwards (read error while hashing) can be
        retried without touching the spent provider upload id. The object is
        hashed outside any transaction.

        Raises
        ------
        IncompleteUpload   some part in `1..part_count` is not UPLOADED
        SessionExpired     past `expires_at`
        InvalidRequest     stitched size differs from `expected_size` (session discarded)
        ChecksumMismatch   client-declared checksum disagrees (session discarded)
        """
        # ── [Step 1] Load, idempotent replay, expiry, gap check ──
        parts: List[Dict[str, Any]] = []
        tx = db.begin_nested() if db.in_transaction() else db.begin()
        async with tx:
            session = await self._load(db, upload_id, user_id=user_id)
            if session.completed:
                return await self._completed_media(db, session)
            if session.expires_at <= self._clock():
                raise SessionExpired(upload_id)

            if session.provider_completed_at is None:
                rows = await self.tracker.list_by_upload(db, upload_id)
                uploaded: Dict[int, ChunkUploadStatus] = {
                    int(r.part_number): r for r in rows if r.status == ChunkStatus.UPLOADED and r.etag
                }
                missing = [n for n in range(1, int(session.part_count) + 1) if n not in uploaded]
                if missing:
                    raise IncompleteUpload(upload_id=upload_id, missing_parts=missing)
                parts = [{"PartNumber": n, "ETag": uploaded[n].etag} for n in sorted(uploaded)]

            object_key = session.object_key
            provider_upload_id = session.provider_upload_id
            expected_size = int(session.expected_size)
            declared_checksum = session.checksum
            stitched_size = session.stitched_size

        # ── [Step 2] Stitch the object once and record it ────────
        if stitched_size is None:
            stitched_size = await self.blob.complete_multipart_upload(object_key, provider_upload_id, parts)
            tx = db.begin_nested() if db.in_transaction() else db.begin()
            async with tx:
                session = await self._load(db, upload_id)
                session.provider_completed_at = self._clock()
                session.stitched_size = stitched_size
            logger.info("Upload %s: provider upload finalized (%s bytes)", upload_id, stitched_size)

        if int(stitched_size) != expected_size:
            await self._discard(db, upload_id, object_key)
            raise InvalidRequest(
                "Uploaded size does not match expected_size",
                details={"expected": expected_size, "actual": int(stitched_size)},
            )

        # ── [Step 3] Verify content hashes (streamed, no transaction held) ──
        digest = await digest_stream(
            self.blob.iter_chunks(object_key, chunk_size=settings.CHECKSUM_READ_CHUNK_BYTES)
        )
        if declared_checksum and declared_checksum != digest.checksum:
            await self._discard(db, upload_id, object_key)
            raise ChecksumMismatch(expected=declared_checksum, actual=digest.checksum)

        # ── [Step 4] Dedup: link or insert, close the session ───
        orphan_key: Optional[str] = None
        tx = db.begin_nested() if db.in_transaction() else db.begin()
        async with tx:
            session = await self._load(db, upload_id)
            if session.completed:
                # a concurrent completion won
                return await self._completed_media(db, session)

            media = await self.dedup.lookup_by_checksum(db, digest.checksum)
            created = False
            if media is None:
                candidate = MediaFile(
                    upload_id=upload_id,
                    user_id=session.user_id,
                    purpose=session.purpose,
                    storage_provider=StorageProvider.S3,
                    bucket=session.bucket,
                    object_key=object_key,
                    original_filename=session.original_filename,
                    mime_type=session.content_type,
                    size_bytes=int(stitched_size),
                    checksum=digest.checksum,
                    sparse_checksum=digest.sparse_checksum,
                    status=MediaStatus.INITIATED,
                )
                media, created = await self.dedup.insert_or_link(db, candidate)
            if created:
                media = await self.state.transition(db, media.id, MediaStatus.INITIATED, MediaStatus.UPLOADED)
            else:
                orphan_key = object_key

            await self.tracker.delete_all_for_upload(db, upload_id)
            session.completed = True
            session.completed_at = self._clock()
            session.media_file_id = media.id
            session.sparse_checksum = digest.sparse_checksum

        if orphan_key is not None:
            await self.blob.delete(orphan_key)
            logger.info("Upload %s deduplicated onto media %s", upload_id, media.id)
        else:
            logger.info("Upload %s completed: media=%s size=%s", upload_id, media.id, media.size_bytes)
        return media

    async def _completed_media(self, db: AsyncSession, session: UploadSession) -> MediaFile:
        media = await db.get(MediaFile, session.media_file_id)
        if media is None:
            raise SessionNotFound(session.upload_id)
        return media

    async def _discard(self, db: AsyncSession, upload_id: str, object_key: str) -> None:
        """Drop a stitched object that failed verification, with its session."""
        await self.blob.delete(object_key)
        tx = db.begin_nested() if db.in_transaction() else db.begin()
        async with tx:
            await self.tracker.delete_all_for_upload(db, upload_id)
            await db.execute(delete(UploadSession).where(UploadSession.upload_id == upload_id))
        logger.warning("Upload %s discarded after failed verification", upload_id)

    # ─────────────────────────────────────────────────────────
    # Abort / expire
    # ─────────────────────────────────────────────────────────
    async def abort_session(self, db: AsyncSession, upload_id: str, *, user_id: Optional[str] = None) -> None:
        """Release provider parts (or the stitched object) and drop the session."""
        tx = db.begin_nested() if db.in_transaction() else db.begin()
        async with tx:
            session = await self._load(db, upload_id, user_id=user_id)
            if session.completed:
                raise InvalidRequest("Completed uploads cannot be aborted", details={"upload_id": upload_id})
            await self._release(db, session)
        logger.info("Upload session %s aborted", upload_id)

    async def _release(self, db: AsyncSession, session: UploadSession) -> None:
        try:
            if session.provider_completed_at is not None:
                await self.blob.delete(session.object_key)
            else:
                await self.blob.abort_multipart_upload(session.object_key, session.provider_upload_id)
        except BlobStoreError as e:
            logger.warning("Provider cleanup failed for upload %s: %s", session.upload_id, e)
        await self.tracker.delete_all_for_upload(db, session.upload_id)
        await db.execute(delete(UploadSession).where(UploadSession.upload_id == session.upload_id))

    async def expire_sessions(self, db: AsyncSession, *, now: Optional[datetime] = None) -> int:
        """Abort every open session past `expires_at`; one failure never stops the sweep."""
        cutoff = now or self._clock()
        ids: List[str] = list(
            (
                await db.execute(
                    select(UploadSession.upload_id)
                    .where(UploadSession.completed.is_(False), UploadSession.expires_at <= cutoff)
                    .order_by(UploadSession.expires_at.asc())
                    .limit(_EXPIRY_SWEEP_LIMIT)
                )
            ).scalars().all()
        )
        await db.commit()

        expired = 0
        for upload_id in ids:
            try:
                async with db.begin():
                    session = await db.get(UploadSession, upload_id, populate_existing=True)
                    if session is None or session.completed:
                        continue
                    await self._release(db, session)
                expired += 1
            except Exception:
                logger.exception("Failed to expire upload session %s", upload_id)
        if expired:
            logger.info("Session expiry sweep: expired=%s", expired)
        return expired


__all__ = [
    "PartUrl",
    "OpenedSession",
    "UploadProgress",
    "UploadSessionManager",
    "build_object_key",
    "extension_for",
    "part_count_for",
]
