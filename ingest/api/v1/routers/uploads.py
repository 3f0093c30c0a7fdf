from __future__ import annotations

"""
BBMovie Ingest • Uploads (multipart sessions)
=============================================

Thin HTTP surface over `UploadSessionManager`. Bytes never pass through
here: clients PUT each part to its presigned URL and report the ETag back.

Route Index
-----------
- POST   /uploads/sessions                              → open a session (201)
- GET    /uploads/sessions/{upload_id}                  → session summary
- POST   /uploads/sessions/{upload_id}/parts:presign    → URLs for a part range
- PUT    /uploads/sessions/{upload_id}/parts/{n}        → record part uploaded (204)
- POST   /uploads/sessions/{upload_id}/parts/{n}/failed → report a failed part
- POST   /uploads/sessions/{upload_id}/parts/{n}/retry  → fresh URL for a failed part
- GET    /uploads/sessions/{upload_id}/progress         → per-part progress
- POST   /uploads/sessions/{upload_id}/duplicate-hint   → advisory early dedup check
- POST   /uploads/sessions/{upload_id}/complete         → finalize (validation runs in background)
- DELETE /uploads/sessions/{upload_id}                  → abort (204)

Security
--------
- Every route is scoped to the caller's `X-User-ID`; foreign sessions are 404.
- Responses carrying presigned URLs are `Cache-Control: no-store`.
"""

import logging
from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, Path, Response, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ingest.core.config import settings
from ingest.core.dependencies import (
    get_current_user_id,
    get_session_factory,
    get_upload_manager,
    get_validator,
)
from ingest.db.session import get_async_db
from ingest.schemas.enums import MediaStatus
from ingest.schemas.uploads import (
    CompleteOut,
    DuplicateHintIn,
    DuplicateHintOut,
    MediaStatusOut,
    OpenSessionIn,
    OpenSessionOut,
    PartFailedIn,
    PartUploadedIn,
    PartUrlOut,
    PresignBatchIn,
    ProgressOut,
    SessionOut,
)
from ingest.services.upload_sessions import UploadSessionManager, build_object_key
from ingest.services.validation import MediaValidator

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/uploads",
    tags=["Uploads"],
    responses={
        400: {"description": "Bad Request"},
        401: {"description": "Unauthorized"},
        404: {"description": "Not Found"},
        409: {"description": "Conflict"},
        410: {"description": "Gone"},
    },
)
__all__ = ["router"]

_UPLOAD_ID = Path(..., min_length=1, max_length=64)
_PART = Path(..., ge=1)


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"
    response.headers["Pragma"] = "no-cache"


# ─────────────────────────────────────────────────────────────────────────────
# 🚀 Open
# ─────────────────────────────────────────────────────────────────────────────
@router.post("/sessions", response_model=OpenSessionOut, status_code=status.HTTP_201_CREATED)
async def open_session(
    payload: OpenSessionIn,
    response: Response,
    user_id: str = Depends(get_current_user_id),
    manager: UploadSessionManager = Depends(get_upload_manager),
    db: AsyncSession = Depends(get_async_db),
) -> OpenSessionOut:
    """Create an upload session; returns URLs for the first batch of parts."""
    key = build_object_key(payload.purpose, user_id, payload.content_type, payload.filename)
    opened = await manager.open_session(
        db,
        user_id=user_id,
        target_key=key,
        expected_size=payload.expected_size,
        part_size=payload.part_size or settings.UPLOAD_MIN_PART_BYTES,
        purpose=payload.purpose,
        content_type=payload.content_type,
        original_filename=payload.filename,
        checksum=payload.checksum,
        sparse_checksum=payload.sparse_checksum,
    )
    await db.commit()
    _no_store(response)
    return OpenSessionOut(
        session=SessionOut.model_validate(opened.session),
        parts=[PartUrlOut.from_part(p) for p in opened.parts],
        presign_batch_max=settings.UPLOAD_PRESIGN_BATCH_MAX,
    )


@router.get("/sessions/{upload_id}", response_model=SessionOut)
async def get_session(
    upload_id: str = _UPLOAD_ID,
    user_id: str = Depends(get_current_user_id),
    manager: UploadSessionManager = Depends(get_upload_manager),
    db: AsyncSession = Depends(get_async_db),
) -> SessionOut:
    session = await manager.get_session(db, upload_id, user_id=user_id)
    return SessionOut.model_validate(session)


# ─────────────────────────────────────────────────────────────────────────────
# 🧩 Parts
# ─────────────────────────────────────────────────────────────────────────────
@router.post("/sessions/{upload_id}/parts:presign", response_model=List[PartUrlOut])
async def presign_parts(
    payload: PresignBatchIn,
    response: Response,
    upload_id: str = _UPLOAD_ID,
    user_id: str = Depends(get_current_user_id),
    manager: UploadSessionManager = Depends(get_upload_manager),
    db: AsyncSession = Depends(get_async_db),
) -> List[PartUrlOut]:
    parts = await manager.presign_part_batch(db, upload_id, payload.from_part, payload.to_part, user_id=user_id)
    _no_store(response)
    return [PartUrlOut.from_part(p) for p in parts]


@router.put("/sessions/{upload_id}/parts/{part_number}", status_code=status.HTTP_204_NO_CONTENT)
async def record_part(
    payload: PartUploadedIn,
    upload_id: str = _UPLOAD_ID,
    part_number: int = _PART,
    user_id: str = Depends(get_current_user_id),
    manager: UploadSessionManager = Depends(get_upload_manager),
    db: AsyncSession = Depends(get_async_db),
) -> Response:
    """Record one uploaded part; repeating the call is harmless."""
    await manager.record_part_uploaded(db, upload_id, part_number, payload.etag, user_id=user_id)
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/sessions/{upload_id}/parts/{part_number}/failed")
async def report_part_failed(
    payload: PartFailedIn,
    upload_id: str = _UPLOAD_ID,
    part_number: int = _PART,
    user_id: str = Depends(get_current_user_id),
    manager: UploadSessionManager = Depends(get_upload_manager),
    db: AsyncSession = Depends(get_async_db),
) -> dict:
    failures = await manager.mark_part_failed(db, upload_id, part_number, payload.reason, user_id=user_id)
    await db.commit()
    return {
        "part_number": part_number,
        "retry_count": failures,
        "retries_left": max(0, settings.CHUNK_MAX_RETRIES - failures + 1),
    }


@router.post("/sessions/{upload_id}/parts/{part_number}/retry", response_model=PartUrlOut)
async def retry_part(
    response: Response,
    upload_id: str = _UPLOAD_ID,
    part_number: int = _PART,
    user_id: str = Depends(get_current_user_id),
    manager: UploadSessionManager = Depends(get_upload_manager),
    db: AsyncSession = Depends(get_async_db),
) -> PartUrlOut:
    part = await manager.retry_part(db, upload_id, part_number, user_id=user_id)
    await db.commit()
    _no_store(response)
    return PartUrlOut.from_part(part)


@router.get("/sessions/{upload_id}/progress", response_model=ProgressOut)
async def get_progress(
    upload_id: str = _UPLOAD_ID,
    user_id: str = Depends(get_current_user_id),
    manager: UploadSessionManager = Depends(get_upload_manager),
    db: AsyncSession = Depends(get_async_db),
) -> ProgressOut:
    progress = await manager.get_progress(db, upload_id, user_id=user_id)
    return ProgressOut(**progress.__dict__)


# ─────────────────────────────────────────────────────────────────────────────
# 🔁 Early duplicate hint
# ─────────────────────────────────────────────────────────────────────────────
@router.post("/sessions/{upload_id}/duplicate-hint", response_model=DuplicateHintOut)
async def duplicate_hint(
    payload: DuplicateHintIn,
    upload_id: str = _UPLOAD_ID,
    user_id: str = Depends(get_current_user_id),
    manager: UploadSessionManager = Depends(get_upload_manager),
    db: AsyncSession = Depends(get_async_db),
) -> DuplicateHintOut:
    """Advisory only; the authoritative check runs at completion."""
    match = await manager.check_duplicate_hint(db, upload_id, payload.sparse_checksum, user_id=user_id)
    await db.commit()
    return DuplicateHintOut(likely_duplicate=match is not None, media_id=match.id if match else None)


# ─────────────────────────────────────────────────────────────────────────────
# ✅ Complete / ❌ Abort
# ─────────────────────────────────────────────────────────────────────────────
@router.post("/sessions/{upload_id}/complete", response_model=CompleteOut)
async def complete_session(
    background: BackgroundTasks,
    upload_id: str = _UPLOAD_ID,
    user_id: str = Depends(get_current_user_id),
    manager: UploadSessionManager = Depends(get_upload_manager),
    validator: MediaValidator = Depends(get_validator),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    db: AsyncSession = Depends(get_async_db),
) -> CompleteOut:
    """
    Finalize the upload.

    A new file is left UPLOADED and validated in the background; the periodic
    validation sweep picks it up if that never runs. A duplicate is linked to
    the existing file and nothing is validated again.
    """
    media = await manager.complete_session(db, upload_id, user_id=user_id)
    await db.commit()
    deduplicated = media.upload_id != upload_id
    if not deduplicated and media.status == MediaStatus.UPLOADED:
        background.add_task(validator.validate_detached, session_factory, media.id)
    return CompleteOut(media=MediaStatusOut.model_validate(media), deduplicated=deduplicated)


@router.delete("/sessions/{upload_id}", status_code=status.HTTP_204_NO_CONTENT)
async def abort_session(
    upload_id: str = _UPLOAD_ID,
    user_id: str = Depends(get_current_user_id),
    manager: UploadSessionManager = Depends(get_upload_manager),
    db: AsyncSession = Depends(get_async_db),
) -> Response:
    await manager.abort_session(db, upload_id, user_id=user_id)
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
