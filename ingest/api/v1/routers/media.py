from __future__ import annotations

"""
BBMovie Ingest • Media files

- GET    /media/{media_id}/status → current lifecycle state
- DELETE /media/{media_id}        → delete (owner or ADMIN), removes stored objects
"""

import logging
from typing import FrozenSet
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ingest.core.dependencies import ADMIN_ROLE, get_current_roles, get_current_user_id, get_state_machine
from ingest.db.session import get_async_db
from ingest.schemas.uploads import MediaStatusOut
from ingest.services.media_state import MediaStateMachine

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/media", tags=["Media"])
__all__ = ["router"]


@router.get("/{media_id}/status", response_model=MediaStatusOut)
async def get_media_status(
    media_id: UUID,
    _user_id: str = Depends(get_current_user_id),
    state: MediaStateMachine = Depends(get_state_machine),
    db: AsyncSession = Depends(get_async_db),
) -> MediaStatusOut:
    media = await state.get_status(db, media_id)
    return MediaStatusOut.model_validate(media)


@router.delete("/{media_id}", response_model=MediaStatusOut)
async def delete_media(
    media_id: UUID,
    user_id: str = Depends(get_current_user_id),
    roles: FrozenSet[str] = Depends(get_current_roles),
    state: MediaStateMachine = Depends(get_state_machine),
    db: AsyncSession = Depends(get_async_db),
) -> MediaStatusOut:
    current = await state.get_status(db, media_id)
    allow_delete = current.user_id == user_id or ADMIN_ROLE in roles
    await db.commit()
    media = await state.delete_media(db, media_id, allow_delete=allow_delete)
    await db.commit()
    logger.info("Media %s deleted by %s", media_id, user_id)
    return MediaStatusOut.model_validate(media)
