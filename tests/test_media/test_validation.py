# tests/test_media/test_validation.py

from uuid import uuid4

import pytest
from sqlalchemy import select

from ingest.core.exceptions import BlobStoreError
from ingest.db.models import MediaFile, OutboxEvent
from ingest.schemas.enums import MediaStatus, ScanVerdict, UploadPurpose
from ingest.services.validation import (
    DisabledVirusScanner,
    MediaValidator,
    SignatureContentTypeDetector,
)
from tests.fixtures.fakes import MP4_HEADER, ScriptedDetector, ScriptedScanner

S = MediaStatus


async def _subjects(session_factory):
    async with session_factory() as db:
        return list((await db.execute(select(OutboxEvent.subject))).scalars().all())


async def _status(session_factory, media_id):
    async with session_factory() as db:
        return (await db.get(MediaFile, media_id)).status


# ──────────────────────────────────────────────────────────────────────
# Outcomes
# ──────────────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_clean_file_is_validated(validator, scanner, detector, db_session, session_factory, media_factory):
    """
    ✅ Allowed type + CLEAN scan → VALIDATED and a transcode request.
    """
    media = await media_factory()

    result = await validator.validate(db_session, media.id)

    assert result.status == S.VALIDATED
    assert detector.calls == [("test-bucket", media.object_key)]
    assert scanner.calls == [("test-bucket", media.object_key)]
    assert await _subjects(session_factory) == ["media.transcode.requested"]


@pytest.mark.anyio
async def test_wrong_content_type_is_invalid(state_machine, fake_blob, db_session, session_factory, media_factory):
    """
    ❌ A PNG uploaded as a movie source → INVALID_FILE, object deleted, scanner never called.
    """
    scanner = ScriptedScanner()
    validator = MediaValidator(scanner, ScriptedDetector("image/png"), state=state_machine, blob=fake_blob)
    media = await media_factory()
    fake_blob.put_object(media.object_key, b"\x89PNG\r\n\x1a\n")

    result = await validator.validate(db_session, media.id)

    assert result.status == S.INVALID_FILE
    assert "image/png" in result.status_reason
    assert scanner.calls == []
    assert media.object_key in fake_blob.deleted
    assert await _subjects(session_factory) == []


@pytest.mark.anyio
async def test_infected_file_is_quarantined(state_machine, fake_blob, db_session, session_factory, media_factory):
    validator = MediaValidator(
        ScriptedScanner(ScanVerdict.INFECTED), ScriptedDetector(), state=state_machine, blob=fake_blob
    )
    media = await media_factory()

    result = await validator.validate(db_session, media.id)

    assert result.status == S.MALWARE_DETECTED
    assert result.status_reason == "virus scan: infected"
    assert media.object_key in fake_blob.deleted
    assert await _subjects(session_factory) == []


@pytest.mark.anyio
@pytest.mark.parametrize(
    "scanner,detector",
    [
        (ScriptedScanner(), ScriptedDetector(error=BlobStoreError("read timed out"))),
        (ScriptedScanner(error=ConnectionError("clamd down")), ScriptedDetector()),
    ],
)
async def test_collaborator_outage_leaves_file_uploaded(
    state_machine, fake_blob, db_session, session_factory, media_factory, scanner, detector
):
    """
    ✅ Detector or scanner unavailable → no transition; a later sweep retries.
    """
    validator = MediaValidator(scanner, detector, state=state_machine, blob=fake_blob)
    media = await media_factory()

    assert await validator.validate(db_session, media.id) is None
    assert await _status(session_factory, media.id) == S.UPLOADED
    assert fake_blob.deleted == []


@pytest.mark.anyio
async def test_non_uploaded_file_returned_unchanged(validator, detector, db_session, media_factory):
    media = await media_factory(status=S.PROCESSING)

    result = await validator.validate(db_session, media.id)

    assert result.status == S.PROCESSING
    assert detector.calls == []


# ──────────────────────────────────────────────────────────────────────
# Sweep / background entry point
# ──────────────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_validate_pending_summarizes_outcomes(state_machine, fake_blob, db_session, session_factory, media_factory):
    """
    ✅ Only UPLOADED rows are swept; counts are keyed by resulting status.
    """
    detector = ScriptedDetector()
    validator = MediaValidator(ScriptedScanner(), detector, state=state_machine, blob=fake_blob)
    a = await media_factory()
    b = await media_factory()
    await media_factory(status=S.COMPLETED)
    poster = await media_factory(purpose=UploadPurpose.MOVIE_POSTER, mime_type="image/png")

    summary = await validator.validate_pending(db_session)

    assert summary == {"VALIDATED": 2, "INVALID_FILE": 1}
    assert len(detector.calls) == 3
    assert await _status(session_factory, a.id) == S.VALIDATED
    assert await _status(session_factory, b.id) == S.VALIDATED
    assert await _status(session_factory, poster.id) == S.INVALID_FILE


@pytest.mark.anyio
async def test_validate_detached_swallows_and_logs(state_machine, fake_blob, session_factory, media_factory):
    validator = MediaValidator(ScriptedScanner(), ScriptedDetector(), state=state_machine, blob=fake_blob)
    media = await media_factory()

    await validator.validate_detached(session_factory, media.id)
    assert await _status(session_factory, media.id) == S.VALIDATED

    # unknown id: MediaNotFound is logged, never raised
    await validator.validate_detached(session_factory, uuid4())


# ──────────────────────────────────────────────────────────────────────
# Default collaborators
# ──────────────────────────────────────────────────────────────────────

@pytest.mark.anyio
@pytest.mark.parametrize(
    "head,expected",
    [
        (MP4_HEADER, "video/mp4"),
        (b"\x00\x00\x00\x14ftypqt  \x00\x00\x00\x00", "video/quicktime"),
        (b"\x1a\x45\xdf\xa3\x01\x00\x00\x00webm", "video/webm"),
        (b"\x1a\x45\xdf\xa3\x01\x00\x00\x00matroska", "video/x-matroska"),
        (b"\xff\xd8\xff\xe0\x00\x10JFIF", "image/jpeg"),
        (b"\x89PNG\r\n\x1a\n\x00\x00", "image/png"),
        (b"RIFF\x00\x00\x00\x00WEBPVP8 ", "image/webp"),
        (b"#!/bin/sh\necho hi\n", None),
    ],
)
async def test_signature_detector(fake_blob, head, expected):
    fake_blob.put_object("uploads/x/file", head + b"\x00" * 300)
    detector = SignatureContentTypeDetector(fake_blob)
    assert await detector.detect("test-bucket", "uploads/x/file") == expected


@pytest.mark.anyio
async def test_disabled_scanner_reports_clean():
    assert await DisabledVirusScanner().scan("b", "k") == ScanVerdict.CLEAN
