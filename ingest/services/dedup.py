from __future__ import annotations

"""
Deduplication index over `media_file` checksums.

Lookups only ever return rows a new upload may safely be linked onto
(UPLOADED, VALIDATED, PROCESSING, COMPLETED); rejected, failed, expired and
deleted rows are invisible, so dedup never short-circuits onto a bad asset.

`insert_or_link` is the single conditional write: the partial unique index
`uq_media_file_live_checksum` decides the winner, and the loser receives the
winner's row instead of an error.
"""

import logging
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ingest.db.models import MediaFile
from ingest.schemas.enums import DEDUP_ELIGIBLE_STATUSES, DEDUP_INDEX_STATUSES

logger = logging.getLogger(__name__)


class DeduplicationIndex:
    async def lookup_by_checksum(self, db: AsyncSession, checksum: Optional[str]) -> Optional[MediaFile]:
        """Authoritative match on the full-content hash."""
        if not checksum:
            return None
        stmt = (
            select(MediaFile)
            .where(MediaFile.checksum == checksum, MediaFile.status.in_(DEDUP_ELIGIBLE_STATUSES))
            .order_by(MediaFile.created_at.asc())
            .limit(1)
        )
        return (await db.execute(stmt)).scalars().first()

    async def lookup_by_sparse_checksum(self, db: AsyncSession, sparse_checksum: Optional[str]) -> Optional[MediaFile]:
        """Advisory match on the leading-sample hash (several rows may share one)."""
        if not sparse_checksum:
            return None
        stmt = (
            select(MediaFile)
            .where(MediaFile.sparse_checksum == sparse_checksum, MediaFile.status.in_(DEDUP_ELIGIBLE_STATUSES))
            .order_by(MediaFile.created_at.asc())
            .limit(1)
        )
        return (await db.execute(stmt)).scalars().first()

    async def insert_or_link(self, db: AsyncSession, candidate: MediaFile) -> Tuple[MediaFile, bool]:
        """
        Insert `candidate` unless a live row already holds its checksum.

        Returns `(row, created)`. Must run inside the caller's transaction; the
        insert happens in a SAVEPOINT so a lost race leaves that transaction
        usable.
        """
        try:
            async with db.begin_nested():
                db.add(candidate)
                await db.flush()
        except IntegrityError:
            existing = await self._holder_of(db, candidate.checksum)
            if existing is None:
                # conflict on something other than the checksum slot
                raise
            logger.info(
                "Dedup race resolved: upload %s linked to media %s", candidate.upload_id, existing.id
            )
            return existing, False
        return candidate, True

    async def _holder_of(self, db: AsyncSession, checksum: Optional[str]) -> Optional[MediaFile]:
        if not checksum:
            return None
        stmt = (
            select(MediaFile)
            .where(MediaFile.checksum == checksum, MediaFile.status.in_(DEDUP_INDEX_STATUSES))
            .execution_options(populate_existing=True)
            .limit(1)
        )
        return (await db.execute(stmt)).scalars().first()


__all__ = ["DeduplicationIndex"]
