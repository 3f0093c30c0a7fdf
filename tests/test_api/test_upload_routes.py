# tests/test_api/test_upload_routes.py

from typing import Any, Dict

import pytest
from httpx import AsyncClient

from tests.fixtures.fakes import mp4_bytes

BASE = "/api/v1/uploads"


def _provider_id(fake_blob, object_key: str) -> str:
    return next(pid for pid, u in fake_blob.uploads.items() if u["key"] == object_key)


async def _open(async_client: AsyncClient, headers: Dict[str, str], size: int, **extra: Any) -> Dict[str, Any]:
    body = {
        "purpose": "MOVIE_SOURCE",
        "content_type": "video/mp4",
        "expected_size": size,
        "filename": "feature.mp4",
        **extra,
    }
    resp = await async_client.post(f"{BASE}/sessions", json=body, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


async def _put(async_client, fake_blob, headers, opened, data: bytes, n: int, part_size: int) -> None:
    session = opened["session"]
    pid = _provider_id(fake_blob, session["object_key"])
    etag = fake_blob.put_part(pid, n, data[(n - 1) * part_size: n * part_size])
    resp = await async_client.put(
        f"{BASE}/sessions/{session['upload_id']}/parts/{n}", json={"etag": etag}, headers=headers
    )
    assert resp.status_code == 204, resp.text


# ──────────────────────────────────────────────────────────────────────
# Auth / envelope
# ──────────────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_missing_user_header_is_401(async_client: AsyncClient):
    resp = await async_client.post(f"{BASE}/sessions", json={})
    assert resp.status_code in (401, 422)

    resp = await async_client.get(f"{BASE}/sessions/abc")
    assert resp.status_code == 401
    assert resp.headers["content-type"].startswith("application/problem+json")


@pytest.mark.anyio
async def test_request_id_is_echoed(async_client: AsyncClient):
    resp = await async_client.get("/healthz", headers={"X-Request-ID": "trace-123"})
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}
    assert resp.headers["X-Request-ID"] == "trace-123"

    generated = await async_client.get("/healthz", headers={"X-Request-ID": "bad id with spaces"})
    assert generated.headers["X-Request-ID"] != "bad id with spaces"


# ──────────────────────────────────────────────────────────────────────
# Full flow
# ──────────────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_upload_flow_gap_then_complete(async_client, fake_blob, user_headers, small_parts):
    """
    ✅ open → parts 1,3 → progress → complete (409 lists part 2) → part 2 → complete.
       Background validation has run by the time the response arrives.
    """
    data = mp4_bytes(3000)
    opened = await _open(async_client, user_headers, len(data))
    upload_id = opened["session"]["upload_id"]

    assert opened["session"]["part_count"] == 3
    assert [p["part_number"] for p in opened["parts"]] == [1, 2, 3]
    assert opened["parts"][2]["end_byte"] == 2999

    await _put(async_client, fake_blob, user_headers, opened, data, 1, 1024)
    await _put(async_client, fake_blob, user_headers, opened, data, 3, 1024)

    progress = await async_client.get(f"{BASE}/sessions/{upload_id}/progress", headers=user_headers)
    assert progress.status_code == 200
    assert progress.json()["uploaded_parts"] == 2
    assert progress.json()["part_statuses"] == {"1": "UPLOADED", "2": "PENDING", "3": "UPLOADED"}

    gap = await async_client.post(f"{BASE}/sessions/{upload_id}/complete", headers=user_headers)
    assert gap.status_code == 409
    problem = gap.json()
    assert problem["title"] == "IncompleteUpload"
    assert problem["details"]["missing_parts"] == [2]

    await _put(async_client, fake_blob, user_headers, opened, data, 2, 1024)
    done = await async_client.post(f"{BASE}/sessions/{upload_id}/complete", headers=user_headers)
    assert done.status_code == 200, done.text
    body = done.json()
    assert body["deduplicated"] is False
    assert body["media"]["upload_id"] == upload_id
    assert body["media"]["size_bytes"] == 3000

    status_resp = await async_client.get(f"/api/v1/media/{body['media']['id']}/status", headers=user_headers)
    assert status_resp.status_code == 200
    assert status_resp.json()["status"] == "VALIDATED"

    session = await async_client.get(f"{BASE}/sessions/{upload_id}", headers=user_headers)
    assert session.json()["completed"] is True
    assert session.json()["media_file_id"] == body["media"]["id"]


@pytest.mark.anyio
async def test_duplicate_upload_reports_deduplicated(async_client, fake_blob, user_headers):
    data = mp4_bytes(2048, seed=b"dup")
    ids = []
    for user in ("user-1", "user-2"):
        headers = {"X-User-ID": user}
        opened = await _open(async_client, headers, len(data))
        await _put(async_client, fake_blob, headers, opened, data, 1, len(data))
        resp = await async_client.post(f"{BASE}/sessions/{opened['session']['upload_id']}/complete", headers=headers)
        assert resp.status_code == 200, resp.text
        ids.append(resp.json())

    assert ids[0]["deduplicated"] is False
    assert ids[1]["deduplicated"] is True
    assert ids[1]["media"]["id"] == ids[0]["media"]["id"]


# ──────────────────────────────────────────────────────────────────────
# Parts endpoints
# ──────────────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_presign_failed_and_retry(async_client, user_headers, small_parts):
    opened = await _open(async_client, user_headers, 4096)
    upload_id = opened["session"]["upload_id"]

    batch = await async_client.post(
        f"{BASE}/sessions/{upload_id}/parts:presign", json={"from_part": 2, "to_part": 3}, headers=user_headers
    )
    assert batch.status_code == 200
    assert [p["part_number"] for p in batch.json()] == [2, 3]
    assert batch.headers["Cache-Control"] == "no-store"

    bad = await async_client.post(
        f"{BASE}/sessions/{upload_id}/parts:presign", json={"from_part": 3, "to_part": 2}, headers=user_headers
    )
    assert bad.status_code == 422

    failed = await async_client.post(
        f"{BASE}/sessions/{upload_id}/parts/2/failed", json={"reason": "socket closed"}, headers=user_headers
    )
    assert failed.status_code == 200
    assert failed.json()["retry_count"] == 1

    retry = await async_client.post(f"{BASE}/sessions/{upload_id}/parts/2/retry", headers=user_headers)
    assert retry.status_code == 200
    assert retry.json()["start_byte"] == 1024

    out_of_range = await async_client.put(
        f"{BASE}/sessions/{upload_id}/parts/9", json={"etag": "x"}, headers=user_headers
    )
    assert out_of_range.status_code == 400


@pytest.mark.anyio
async def test_duplicate_hint_endpoint(async_client, user_headers, media_factory):
    existing = await media_factory(sparse_checksum="f" * 64)
    opened = await _open(async_client, user_headers, 4096)

    resp = await async_client.post(
        f"{BASE}/sessions/{opened['session']['upload_id']}/duplicate-hint",
        json={"sparse_checksum": "f" * 64},
        headers=user_headers,
    )
    assert resp.status_code == 200
    assert resp.json() == {"likely_duplicate": True, "media_id": str(existing.id)}


# ──────────────────────────────────────────────────────────────────────
# Abort / ownership
# ──────────────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_abort_and_foreign_access(async_client, fake_blob, user_headers):
    opened = await _open(async_client, user_headers, 4096)
    upload_id = opened["session"]["upload_id"]

    foreign = await async_client.get(f"{BASE}/sessions/{upload_id}", headers={"X-User-ID": "intruder"})
    assert foreign.status_code == 404

    aborted = await async_client.delete(f"{BASE}/sessions/{upload_id}", headers=user_headers)
    assert aborted.status_code == 204
    assert len(fake_blob.aborted) == 1

    gone = await async_client.get(f"{BASE}/sessions/{upload_id}", headers=user_headers)
    assert gone.status_code == 404
    assert gone.json()["title"] == "SessionNotFound"


@pytest.mark.anyio
async def test_open_rejects_wrong_mime_for_purpose(async_client, user_headers):
    resp = await async_client.post(
        f"{BASE}/sessions",
        json={"purpose": "USER_AVATAR", "content_type": "video/mp4", "expected_size": 100},
        headers=user_headers,
    )
    assert resp.status_code == 400
    assert resp.json()["title"] == "InvalidRequest"
