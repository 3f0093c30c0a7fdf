# tests/test_uploads/test_dedup.py

import pytest
from sqlalchemy import func, select

from ingest.db.models import MediaFile, OutboxEvent, UploadSession
from ingest.schemas.enums import MediaStatus, StorageProvider, UploadPurpose
from ingest.services.checksum import sparse_checksum_of
from ingest.services.dedup import DeduplicationIndex
from ingest.services.upload_sessions import build_object_key
from tests.fixtures.fakes import mp4_bytes, sha256_hex

FIVE_MIB = 5 * 1024 * 1024


async def _upload_whole(uploads, fake_blob, db, data: bytes, user_id: str):
    """Open, PUT and complete a single-part upload; returns (session, media)."""
    key = build_object_key(UploadPurpose.MOVIE_SOURCE, user_id, "video/mp4", "feature.mp4")
    opened = await uploads.open_session(
        db,
        user_id=user_id,
        target_key=key,
        expected_size=len(data),
        part_size=len(data),
        purpose=UploadPurpose.MOVIE_SOURCE,
        content_type="video/mp4",
    )
    s = opened.session
    etag = fake_blob.put_part(s.provider_upload_id, 1, data)
    await uploads.record_part_uploaded(db, s.upload_id, 1, etag, user_id=user_id)
    media = await uploads.complete_session(db, s.upload_id, user_id=user_id)
    return s, media


def _candidate(checksum: str, upload_id: str) -> MediaFile:
    return MediaFile(
        upload_id=upload_id,
        user_id="user-2",
        purpose=UploadPurpose.MOVIE_SOURCE,
        storage_provider=StorageProvider.S3,
        bucket="test-bucket",
        object_key=f"uploads/movie_source/user-2/{upload_id}.mp4",
        mime_type="video/mp4",
        size_bytes=4096,
        checksum=checksum,
        status=MediaStatus.INITIATED,
    )


# ──────────────────────────────────────────────────────────────────────
# End-to-end: identical bytes uploaded twice
# ──────────────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_identical_uploads_share_one_media_file(
    uploads, validator, fake_blob, db_session, session_factory
):
    """
    ✅ Two identical 5 MiB uploads → one MediaFile, the second linked to the first,
       its orphan object removed, and a single transcode request emitted.
    """
    data = mp4_bytes(FIVE_MIB, seed=b"same-movie")

    first_session, first = await _upload_whole(uploads, fake_blob, db_session, data, "user-1")
    assert first.upload_id == first_session.upload_id
    validated = await validator.validate(db_session, first.id)
    assert validated.status == MediaStatus.VALIDATED

    second_session, second = await _upload_whole(uploads, fake_blob, db_session, data, "user-2")
    assert second.id == first.id
    assert second.upload_id != second_session.upload_id

    assert second_session.object_key in fake_blob.deleted
    assert second_session.object_key not in fake_blob.objects
    assert first_session.object_key in fake_blob.objects

    async with session_factory() as db:
        assert (await db.execute(select(func.count()).select_from(MediaFile))).scalar_one() == 1
        linked = await db.get(UploadSession, second_session.upload_id)
        assert linked.completed is True and linked.media_file_id == first.id
        subjects = (await db.execute(select(OutboxEvent.subject))).scalars().all()
        assert subjects == ["media.transcode.requested"]


@pytest.mark.anyio
async def test_upload_after_rejected_original_is_stored_fresh(uploads, fake_blob, db_session, media_factory):
    """
    ✅ A matching file that was rejected is not a dedup target; the new upload gets its own row.
    """
    data = mp4_bytes(4096, seed=b"retry")
    rejected = await media_factory(checksum=sha256_hex(data), status=MediaStatus.INVALID_FILE)

    session, media = await _upload_whole(uploads, fake_blob, db_session, data, "user-1")
    assert media.id != rejected.id
    assert media.upload_id == session.upload_id
    assert media.status == MediaStatus.UPLOADED
    assert session.object_key not in fake_blob.deleted


# ──────────────────────────────────────────────────────────────────────
# Index primitives
# ──────────────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_lookup_ignores_non_eligible_rows(db_session, media_factory):
    index = DeduplicationIndex()
    checksum = "c" * 64

    await media_factory(checksum=checksum, status=MediaStatus.MALWARE_DETECTED)
    assert await index.lookup_by_checksum(db_session, checksum) is None

    live = await media_factory(checksum=checksum, status=MediaStatus.COMPLETED)
    found = await index.lookup_by_checksum(db_session, checksum)
    assert found is not None and found.id == live.id

    assert await index.lookup_by_checksum(db_session, None) is None


@pytest.mark.anyio
async def test_insert_or_link_resolves_lost_race(db_session, media_factory):
    """
    ✅ A concurrent completion already holds the checksum slot (still INITIATED, so
       lookups miss it); the insert loses on the unique index and links instead.
    """
    index = DeduplicationIndex()
    checksum = "d" * 64
    holder = await media_factory(checksum=checksum, status=MediaStatus.INITIATED)

    assert await index.lookup_by_checksum(db_session, checksum) is None
    await db_session.commit()

    async with db_session.begin():
        row, created = await index.insert_or_link(db_session, _candidate(checksum, "race-loser"))
        assert created is False
        assert row.id == holder.id

    total = (await db_session.execute(select(func.count()).select_from(MediaFile))).scalar_one()
    assert total == 1


@pytest.mark.anyio
async def test_insert_or_link_creates_when_slot_free(db_session, media_factory):
    index = DeduplicationIndex()
    checksum = "e" * 64
    await media_factory(checksum=checksum, status=MediaStatus.EXPIRED)

    async with db_session.begin():
        row, created = await index.insert_or_link(db_session, _candidate(checksum, "fresh"))

    assert created is True
    assert row.upload_id == "fresh"


@pytest.mark.anyio
async def test_sparse_checksum_hint(uploads, db_session, media_factory):
    """
    ✅ The leading-sample hash finds a likely duplicate before the bytes are uploaded.
    """
    data = mp4_bytes(4096, seed=b"hint")
    sparse = sparse_checksum_of(data)
    existing = await media_factory(sparse_checksum=sparse, status=MediaStatus.VALIDATED)

    key = build_object_key(UploadPurpose.MOVIE_SOURCE, "user-3", "video/mp4")
    opened = await uploads.open_session(
        db_session,
        user_id="user-3",
        target_key=key,
        expected_size=len(data),
        part_size=len(data),
        purpose=UploadPurpose.MOVIE_SOURCE,
        content_type="video/mp4",
    )
    match = await uploads.check_duplicate_hint(db_session, opened.session.upload_id, sparse, user_id="user-3")
    assert match is not None and match.id == existing.id

    other = await uploads.check_duplicate_hint(db_session, opened.session.upload_id, "0" * 64, user_id="user-3")
    assert other is None
