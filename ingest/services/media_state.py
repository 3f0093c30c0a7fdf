from __future__ import annotations

"""
BBMovie Ingest: Media State Machine
====================================

Authoritative status of a `MediaFile`, from intake to terminal states.

```
INITIATED → UPLOADED → VALIDATED → PROCESSING → COMPLETED
                     ↘ REJECTED               ↘ FAILED
UPLOADED|VALIDATED → MALWARE_DETECTED | INVALID_FILE
(any non-terminal) → EXPIRED
(any state)        → DELETED
```

Every write is a compare-and-swap:
`UPDATE media_file SET status=:to WHERE id=:id AND status=:from`. Zero rows
updated means someone else moved first; the caller gets `StaleStateError`
with the status actually persisted and must decide what to do.

Outbox rows are staged in the same transaction as the status change
(entering VALIDATED → `media.transcode.requested`; COMPLETED / FAILED →
status events), so an event exists iff its state change committed.

Verdicts (scanner, content-type validator, worker reports) are inputs only;
this module never runs them.
"""

from datetime import timedelta
import logging
from typing import Any, Dict, FrozenSet, List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ingest.core.config import settings
from ingest.core.exceptions import (
    DeleteNotAllowed,
    IllegalTransition,
    MediaNotFound,
    StaleStateError,
)
from ingest.db.base_class import utcnow
from ingest.db.models import MediaFile
from ingest.schemas.enums import MediaStatus, OutboxEventType, TERMINAL_STATUSES
from ingest.services.outbox import enqueue_media_event
from ingest.utils.aws import BlobStore

logger = logging.getLogger(__name__)

S = MediaStatus

ALLOWED_TRANSITIONS: Dict[MediaStatus, FrozenSet[MediaStatus]] = {
    S.INITIATED: frozenset({S.UPLOADED, S.EXPIRED, S.DELETED}),
    S.UPLOADED: frozenset({S.VALIDATED, S.REJECTED, S.MALWARE_DETECTED, S.INVALID_FILE, S.EXPIRED, S.DELETED}),
    S.VALIDATED: frozenset({S.PROCESSING, S.REJECTED, S.MALWARE_DETECTED, S.INVALID_FILE, S.EXPIRED, S.DELETED}),
    S.PROCESSING: frozenset({S.COMPLETED, S.FAILED, S.EXPIRED, S.DELETED}),
    S.COMPLETED: frozenset({S.DELETED}),
    S.REJECTED: frozenset({S.DELETED}),
    S.MALWARE_DETECTED: frozenset({S.DELETED}),
    S.INVALID_FILE: frozenset({S.DELETED}),
    S.FAILED: frozenset({S.DELETED}),
    S.EXPIRED: frozenset({S.DELETED}),
    S.DELETED: frozenset(),
}

_EVENT_ON_ENTER: Dict[MediaStatus, OutboxEventType] = {
    S.VALIDATED: OutboxEventType.TRANSCODE_REQUESTED,
    S.COMPLETED: OutboxEventType.MEDIA_COMPLETED,
    S.FAILED: OutboxEventType.MEDIA_FAILED,
}

# Forward progress of the happy path; used to recognise superseded worker reports.
_PROGRESS: Dict[MediaStatus, int] = {
    S.INITIATED: 0,
    S.UPLOADED: 1,
    S.VALIDATED: 2,
    S.PROCESSING: 3,
    S.COMPLETED: 4,
    S.FAILED: 4,
}

# Statuses a worker may report, keyed to the status they must come from.
_WORKER_REPORTS: Dict[MediaStatus, MediaStatus] = {
    S.PROCESSING: S.VALIDATED,
    S.COMPLETED: S.PROCESSING,
    S.FAILED: S.PROCESSING,
}

STALE_CANDIDATE_STATUSES: FrozenSet[MediaStatus] = frozenset({S.INITIATED, S.UPLOADED, S.VALIDATED})

_STALE_SWEEP_LIMIT = 500


def renditions_prefix(upload_id: str) -> str:
    """Blob prefix holding transcoded outputs for one upload."""
    return f"movies/{upload_id}/"


def can_transition(source: MediaStatus, target: MediaStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(source, frozenset())


def _supersedes(actual: MediaStatus, reported: MediaStatus) -> bool:
    """True when `actual` already is at/after `reported` (or the file is gone)."""
    if actual == S.DELETED or actual in TERMINAL_STATUSES:
        return True
    return _PROGRESS.get(actual, -1) >= _PROGRESS.get(reported, 99)


class MediaStateMachine:
    """Compare-and-swap transitions over `media_file.status`."""

    def __init__(self, blob: Optional[BlobStore] = None) -> None:
        self.blob = blob

    # ─────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────
    async def get_status(self, db: AsyncSession, media_id: UUID) -> MediaFile:
        media = await db.get(MediaFile, media_id, populate_existing=True)
        if media is None:
            raise MediaNotFound(media_id)
        return media

    # ─────────────────────────────────────────────────────────
    # CAS transition
    # ─────────────────────────────────────────────────────────
    async def transition(
        self,
        db: AsyncSession,
        media_id: UUID,
        expected: MediaStatus,
        target: MediaStatus,
        *,
        reason: Optional[str] = None,
        probe: Optional[Dict[str, Any]] = None,
    ) -> MediaFile:
        """
        Move `media_id` from `expected` to `target` atomically.

        Raises
        ------
        IllegalTransition
            `expected → target` is not an edge of the graph.
        StaleStateError
            The persisted status is not `expected`.
        MediaNotFound
            No such row.
        """
        expected, target = MediaStatus(expected), MediaStatus(target)
        if not can_transition(expected, target):
            raise IllegalTransition(source=expected.value, target=target.value)

        values: Dict[str, Any] = {"status": target, "updated_at": utcnow()}
        if reason is not None:
            values["status_reason"] = reason[:512]
        if probe is not None:
            values["probe"] = probe

        tx = db.begin_nested() if db.in_transaction() else db.begin()
        async with tx:
            result = await db.execute(
                update(MediaFile)
                .where(MediaFile.id == media_id, MediaFile.status == expected)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                actual = (
                    await db.execute(select(MediaFile.status).where(MediaFile.id == media_id))
                ).scalar_one_or_none()
                if actual is None:
                    raise MediaNotFound(media_id)
                raise StaleStateError(media_id=media_id, expected=expected, actual=actual)

            media = await db.get(MediaFile, media_id, populate_existing=True)
            event_type = _EVENT_ON_ENTER.get(target)
            if event_type is not None:
                enqueue_media_event(db, media, event_type)

        logger.info("Media %s: %s -> %s%s", media_id, expected.value, target.value, f" ({reason})" if reason else "")
        return media

    # ─────────────────────────────────────────────────────────
    # Worker reports
    # ─────────────────────────────────────────────────────────
    async def apply_worker_report(
        self,
        db: AsyncSession,
        media_id: UUID,
        reported: MediaStatus,
        *,
        reason: Optional[str] = None,
        probe: Optional[Dict[str, Any]] = None,
    ) -> Optional[MediaFile]:
        """
        Apply PROCESSING / COMPLETED / FAILED from a transcode worker.

        Returns the updated row, or None when the report is superseded (the
        file was deleted, already finished, or already past this status).
        """
        reported = MediaStatus(reported)
        source = _WORKER_REPORTS.get(reported)
        if source is None:
            raise IllegalTransition(source="worker", target=reported.value)

        try:
            return await self.transition(db, media_id, source, reported, reason=reason, probe=probe)
        except StaleStateError as e:
            actual = MediaStatus(e.actual)
            if _supersedes(actual, reported):
                logger.info("Ignoring stale worker report %s for media %s (now %s)", reported.value, media_id, actual.value)
                return None
            raise

    # ─────────────────────────────────────────────────────────
    # Soft delete
    # ─────────────────────────────────────────────────────────
    async def delete_media(self, db: AsyncSession, media_id: UUID, *, allow_delete: bool) -> MediaFile:
        """
        Soft-delete a media file and purge its blobs best-effort.

        Authorization is the caller's explicit `allow_delete`; a retry after a
        concurrent status change re-reads the row and tries again from there.
        """
        if not allow_delete:
            raise DeleteNotAllowed(media_id)

        tx = db.begin_nested() if db.in_transaction() else db.begin()
        async with tx:
            media = await self.get_status(db, media_id)
            for _ in range(3):
                current = MediaStatus(media.status)
                if current == S.DELETED:
                    return media
                try:
                    media = await self.transition(db, media_id, current, S.DELETED, reason="deleted")
                    break
                except StaleStateError:
                    media = await self.get_status(db, media_id)
            else:
                raise StaleStateError(media_id=media_id, expected=media.status, actual=media.status)

        if self.blob is not None:
            await self.blob.delete(media.object_key)
            try:
                await self.blob.delete_prefix(renditions_prefix(media.upload_id))
            except Exception as e:  # noqa: BLE001
                logger.warning("Rendition purge failed for media %s: %s", media_id, e)
        return media

    # ─────────────────────────────────────────────────────────
    # Stale sweep
    # ─────────────────────────────────────────────────────────
    async def expire_stale(self, db: AsyncSession, *, ttl: Optional[timedelta] = None) -> int:
        """EXPIRE files stuck before processing for longer than `ttl`."""
        cutoff = utcnow() - (ttl or timedelta(hours=settings.MEDIA_STALE_TTL_HOURS))
        rows: List[tuple] = list(
            (
                await db.execute(
                    select(MediaFile.id, MediaFile.status)
                    .where(MediaFile.status.in_(STALE_CANDIDATE_STATUSES), MediaFile.updated_at < cutoff)
                    .order_by(MediaFile.updated_at.asc())
                    .limit(_STALE_SWEEP_LIMIT)
                )
            ).all()
        )
        await db.commit()

        expired = 0
        for media_id, status in rows:
            try:
                await self.transition(db, media_id, status, S.EXPIRED, reason="stale")
                expired += 1
            except StaleStateError:
                continue
            except Exception:
                logger.exception("Failed to expire media %s", media_id)
        if expired:
            logger.info("Stale media sweep: expired=%s", expired)
        return expired

    async def fail_stuck_processing(self, db: AsyncSession, *, ttl: Optional[timedelta] = None) -> int:
        """
        FAIL files left in PROCESSING longer than `ttl`.

        A worker that died with its stream entry lost leaves the row there;
        failing it emits `media.status.failed` so downstream can resubmit.
        """
        cutoff = utcnow() - (ttl or timedelta(hours=settings.MEDIA_PROCESSING_TTL_HOURS))
        ids: List[UUID] = list(
            (
                await db.execute(
                    select(MediaFile.id)
                    .where(MediaFile.status == S.PROCESSING, MediaFile.updated_at < cutoff)
                    .order_by(MediaFile.updated_at.asc())
                    .limit(_STALE_SWEEP_LIMIT)
                )
            ).scalars().all()
        )
        await db.commit()

        failed = 0
        for media_id in ids:
            try:
                await self.transition(db, media_id, S.PROCESSING, S.FAILED, reason="processing timed out")
                failed += 1
            except StaleStateError:
                continue
            except Exception:
                logger.exception("Failed to time out media %s", media_id)
        if failed:
            logger.info("Processing timeout sweep: failed=%s", failed)
        return failed


__all__ = [
    "ALLOWED_TRANSITIONS",
    "STALE_CANDIDATE_STATUSES",
    "MediaStateMachine",
    "can_transition",
    "renditions_prefix",
]
