# tests/fixtures/services.py
"""
Service wiring over the fake collaborators, plus a MediaFile factory for
tests that start mid-lifecycle.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable
from uuid import uuid4

import pytest

from ingest.core.config import settings
from ingest.db.models import MediaFile
from ingest.schemas.enums import MediaStatus, StorageProvider, UploadPurpose
from ingest.services.media_state import MediaStateMachine
from ingest.services.outbox import OutboxPublisher
from ingest.services.upload_sessions import UploadSessionManager
from ingest.services.validation import MediaValidator


@pytest.fixture()
def state_machine(fake_blob) -> MediaStateMachine:
    return MediaStateMachine(fake_blob)


@pytest.fixture()
def uploads(fake_blob, state_machine) -> UploadSessionManager:
    return UploadSessionManager(fake_blob, state=state_machine)


@pytest.fixture()
def validator(scanner, detector, state_machine, fake_blob) -> MediaValidator:
    return MediaValidator(scanner, detector, state=state_machine, blob=fake_blob)


@pytest.fixture()
def publisher(fake_bus, session_factory) -> OutboxPublisher:
    return OutboxPublisher(fake_bus, session_factory, max_retries=3)


@pytest.fixture()
def small_parts(monkeypatch):
    """Shrink the provider minimum part size so multi-part tests stay small."""
    monkeypatch.setattr(settings, "UPLOAD_MIN_PART_BYTES", 1024)
    return 1024


@pytest.fixture()
def media_factory(session_factory) -> Callable[..., Awaitable[MediaFile]]:
    """Insert a MediaFile directly (defaults: UPLOADED movie source)."""

    async def _make(**overrides: Any) -> MediaFile:
        upload_id = overrides.pop("upload_id", uuid4().hex)
        values = dict(
            upload_id=upload_id,
            user_id="user-1",
            purpose=UploadPurpose.MOVIE_SOURCE,
            storage_provider=StorageProvider.S3,
            bucket="test-bucket",
            object_key=f"uploads/movie_source/user-1/{upload_id}.mp4",
            mime_type="video/mp4",
            size_bytes=4096,
            checksum=uuid4().hex + uuid4().hex,
            status=MediaStatus.UPLOADED,
        )
        values.update(overrides)
        async with session_factory() as db:
            async with db.begin():
                media = MediaFile(**values)
                db.add(media)
        return media

    return _make


__all__ = [
    "state_machine",
    "uploads",
    "validator",
    "publisher",
    "small_parts",
    "media_factory",
]
