from __future__ import annotations

"""
Chunk status tracker: pure bookkeeping keyed by `(upload_id, part_number)`.

No business policy lives here: gap detection, retry ceilings and completion
belong to `ingest.services.upload_sessions`, the only caller.

Concurrency
-----------
Every write is a single `INSERT ... ON CONFLICT (upload_id, part_number)`
statement, so parallel PUT callbacks for different parts never conflict and
two callbacks for the same part resolve last-write-wins. Statements run in the
caller's session; the caller owns the transaction.
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from ingest.db.base_class import utcnow
from ingest.db.models import ChunkUploadStatus
from ingest.schemas.enums import ChunkStatus

_INSERT_BATCH = 500


def _insert_for(db: AsyncSession):
    """Dialect-specific INSERT supporting ON CONFLICT."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Unsupported dialect for chunk upserts: {dialect}")


class ChunkStatusTracker:
    """Per-part upload state for one logical upload."""

    async def initialize(self, db: AsyncSession, upload_id: str, part_count: int) -> None:
        """Create PENDING rows for parts `1..part_count` (existing rows untouched)."""
        insert = _insert_for(db)
        now = utcnow()
        numbers = list(range(1, int(part_count) + 1))
        for i in range(0, len(numbers), _INSERT_BATCH):
            rows = [
                {"upload_id": upload_id, "part_number": n, "status": ChunkStatus.PENDING, "retry_count": 0, "updated_at": now}
                for n in numbers[i:i + _INSERT_BATCH]
            ]
            stmt = insert(ChunkUploadStatus).values(rows).on_conflict_do_nothing(
                index_elements=["upload_id", "part_number"]
            )
            await db.execute(stmt)

    async def upsert(
        self,
        db: AsyncSession,
        upload_id: str,
        part_number: int,
        status: ChunkStatus,
        checksum: Optional[str] = None,
    ) -> None:
        """Insert or overwrite one part's status (last write wins)."""
        insert = _insert_for(db)
        now = utcnow()
        values: Dict[str, Any] = {
            "upload_id": upload_id,
            "part_number": int(part_number),
            "status": status,
            "etag": checksum,
            "retry_count": 0,
            "updated_at": now,
            "uploaded_at": now if status == ChunkStatus.UPLOADED else None,
        }
        stmt = insert(ChunkUploadStatus).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["upload_id", "part_number"],
            set_={
                "status": stmt.excluded.status,
                "etag": stmt.excluded.etag,
                "updated_at": stmt.excluded.updated_at,
                "uploaded_at": stmt.excluded.uploaded_at,
            },
        )
        await db.execute(stmt)

    async def record_failure(self, db: AsyncSession, upload_id: str, part_number: int, reason: Optional[str]) -> int:
        """Mark a part FAILED and bump its retry counter; returns the new count."""
        insert = _insert_for(db)
        reason = (reason or "")[:512] or None
        stmt = insert(ChunkUploadStatus).values(
            upload_id=upload_id,
            part_number=int(part_number),
            status=ChunkStatus.FAILED,
            retry_count=1,
            last_error=reason,
            updated_at=utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["upload_id", "part_number"],
            set_={
                "status": ChunkStatus.FAILED,
                "retry_count": ChunkUploadStatus.retry_count + 1,
                "last_error": stmt.excluded.last_error,
                "updated_at": stmt.excluded.updated_at,
            },
        ).returning(ChunkUploadStatus.retry_count)
        return int((await db.execute(stmt)).scalar_one())

    async def get(self, db: AsyncSession, upload_id: str, part_number: int) -> Optional[ChunkUploadStatus]:
        stmt = select(ChunkUploadStatus).where(
            ChunkUploadStatus.upload_id == upload_id,
            ChunkUploadStatus.part_number == int(part_number),
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    async def list_by_upload(self, db: AsyncSession, upload_id: str) -> List[ChunkUploadStatus]:
        """All rows for one upload, ordered by part number."""
        stmt = (
            select(ChunkUploadStatus)
            .where(ChunkUploadStatus.upload_id == upload_id)
            .order_by(ChunkUploadStatus.part_number.asc())
            .execution_options(populate_existing=True)
        )
        return list((await db.execute(stmt)).scalars().all())

    async def count_by_status(self, db: AsyncSession, upload_id: str, status: ChunkStatus) -> int:
        stmt = select(func.count()).select_from(ChunkUploadStatus).where(
            ChunkUploadStatus.upload_id == upload_id,
            ChunkUploadStatus.status == status,
        )
        return int((await db.execute(stmt)).scalar_one())

    async def counts(self, db: AsyncSession, upload_id: str) -> Dict[ChunkStatus, int]:
        """Row counts per status in one round-trip (missing statuses are 0)."""
        stmt = (
            select(ChunkUploadStatus.status, func.count())
            .where(ChunkUploadStatus.upload_id == upload_id)
            .group_by(ChunkUploadStatus.status)
        )
        out: Dict[ChunkStatus, int] = {s: 0 for s in ChunkStatus}
        for status, n in (await db.execute(stmt)).all():
            out[ChunkStatus(status)] = int(n)
        return out

    async def reset_to_pending(self, db: AsyncSession, upload_id: str, part_numbers: Iterable[int]) -> None:
        """Flip FAILED parts back to PENDING when a retry URL is handed out."""
        numbers: Sequence[int] = [int(n) for n in part_numbers]
        if not numbers:
            return
        await db.execute(
            update(ChunkUploadStatus)
            .where(
                ChunkUploadStatus.upload_id == upload_id,
                ChunkUploadStatus.part_number.in_(numbers),
                ChunkUploadStatus.status == ChunkStatus.FAILED,
            )
            .values(status=ChunkStatus.PENDING, updated_at=utcnow())
        )

    async def delete_all_for_upload(self, db: AsyncSession, upload_id: str) -> int:
        result = await db.execute(delete(ChunkUploadStatus).where(ChunkUploadStatus.upload_id == upload_id))
        return int(result.rowcount or 0)


__all__ = ["ChunkStatusTracker"]
