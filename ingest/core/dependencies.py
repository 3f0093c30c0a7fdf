# ingest/core/dependencies.py
from __future__ import annotations

"""
Request dependencies: BBMovie Ingest
=====================================

Authentication happens at the gateway; this service trusts the forwarded
`X-User-ID` (and `X-User-Roles` for admin actions). Services are built per
request from process-wide collaborators so tests can override any layer
through `app.dependency_overrides`.
"""

from functools import lru_cache
import logging
from typing import FrozenSet, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ingest.db.session import async_session_maker
from ingest.services.media_state import MediaStateMachine
from ingest.services.upload_sessions import UploadSessionManager
from ingest.services.validation import DisabledVirusScanner, MediaValidator, SignatureContentTypeDetector
from ingest.utils.aws import BlobStore, S3Client

logger = logging.getLogger(__name__)

__all__ = [
    "get_current_user_id",
    "get_current_roles",
    "get_blob_store",
    "get_session_factory",
    "get_upload_manager",
    "get_state_machine",
    "get_validator",
]

ADMIN_ROLE = "ADMIN"


# ──────────────────────────────────────────────────────────────
# 👤 Caller identity (gateway headers)
# ──────────────────────────────────────────────────────────────
def get_current_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-ID")) -> str:
    """Authenticated user id forwarded by the gateway; 401 when missing."""
    user_id = (x_user_id or "").strip()
    if not user_id or len(user_id) > 64:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing or invalid X-User-ID")
    return user_id


def get_current_roles(x_user_roles: Optional[str] = Header(None, alias="X-User-Roles")) -> FrozenSet[str]:
    return frozenset(r.strip().upper() for r in (x_user_roles or "").split(",") if r.strip())


# ──────────────────────────────────────────────────────────────
# 🔌 Collaborators
# ──────────────────────────────────────────────────────────────
@lru_cache(maxsize=1)
def get_blob_store() -> BlobStore:
    return S3Client()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_session_maker


# ──────────────────────────────────────────────────────────────
# 🧭 Services
# ──────────────────────────────────────────────────────────────
def get_state_machine(blob: BlobStore = Depends(get_blob_store)) -> MediaStateMachine:
    return MediaStateMachine(blob)


def get_upload_manager(
    blob: BlobStore = Depends(get_blob_store),
    state: MediaStateMachine = Depends(get_state_machine),
) -> UploadSessionManager:
    return UploadSessionManager(blob, state=state)


def get_validator(
    blob: BlobStore = Depends(get_blob_store),
    state: MediaStateMachine = Depends(get_state_machine),
) -> MediaValidator:
    return MediaValidator(DisabledVirusScanner(), SignatureContentTypeDetector(blob), state=state, blob=blob)
