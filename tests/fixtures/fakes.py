# tests/fixtures/fakes.py
"""
In-memory stand-ins for the service's collaborators:

- FakeBlobStore : multipart uploads, ranged reads, streaming, deletes
- FakeBus       : records published events; can fail wholesale or per media id
- ScriptedScanner / ScriptedDetector : fixed verdicts or raised errors
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Set, Tuple

import pytest

from ingest.core.exceptions import BlobStoreError
from ingest.schemas.enums import ScanVerdict

MP4_HEADER = b"\x00\x00\x00\x18ftypmp42\x00\x00\x00\x00mp42isom"


def mp4_bytes(size: int, *, seed: bytes = b"a") -> bytes:
    """Deterministic payload of `size` bytes that sniffs as video/mp4."""
    body = (seed * (size // max(1, len(seed)) + 1))[: max(0, size - len(MP4_HEADER))]
    return (MP4_HEADER + body)[:size]


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class FakeBlobStore:
    def __init__(self, bucket: str = "test-bucket") -> None:
        self.bucket = bucket
        self.objects: Dict[str, bytes] = {}
        self.uploads: Dict[str, Dict[str, Any]] = {}
        self.aborted: List[str] = []
        self.deleted: List[str] = []
        self.fail_reads = False
        self.completions = 0
        self._seq = 0

    # ── multipart ─────────────────────────────────────────────
    async def create_multipart_upload(self, key: str, *, content_type: str) -> str:
        self._seq += 1
        provider_upload_id = f"mpu-{self._seq}"
        self.uploads[provider_upload_id] = {"key": key, "content_type": content_type, "parts": {}}
        return provider_upload_id

    async def presign_part(self, key: str, provider_upload_id: str, part_number: int, *, expires_in: int) -> str:
        return f"https://blob.test/{key}?uploadId={provider_upload_id}&partNumber={part_number}&ttl={expires_in}"

    def put_part(self, provider_upload_id: str, part_number: int, data: bytes) -> str:
        """What the client's PUT to a presigned URL does; returns the ETag."""
        etag = hashlib.md5(data).hexdigest()
        self.uploads[provider_upload_id]["parts"][int(part_number)] = (etag, data)
        return etag

    async def complete_multipart_upload(self, key: str, provider_upload_id: str, parts: Sequence[Dict[str, Any]]) -> int:
        self.completions += 1
        upload = self.uploads.get(provider_upload_id)
        if upload is None:
            raise BlobStoreError("NoSuchUpload")
        body = b""
        for p in sorted(parts, key=lambda p: int(p["PartNumber"])):
            etag, data = upload["parts"][int(p["PartNumber"])]
            if etag != p["ETag"]:
                raise BlobStoreError(f"InvalidPart {p['PartNumber']}")
            body += data
        del self.uploads[provider_upload_id]
        self.objects[key] = body
        return len(body)

    async def abort_multipart_upload(self, key: str, provider_upload_id: str) -> None:
        self.aborted.append(provider_upload_id)
        self.uploads.pop(provider_upload_id, None)

    # ── reads ─────────────────────────────────────────────────
    def put_object(self, key: str, data: bytes) -> None:
        self.objects[key] = data

    async def presigned_get(self, key: str, *, expires_in: int = 300) -> str:
        return f"https://blob.test/{key}?ttl={expires_in}"

    async def read_range(self, key: str, start: int, end: int) -> bytes:
        if self.fail_reads or key not in self.objects:
            raise BlobStoreError(f"Failed to read range: {key}")
        return self.objects[key][start:end + 1]

    async def iter_chunks(self, key: str, *, chunk_size: int) -> AsyncIterator[bytes]:
        if self.fail_reads or key not in self.objects:
            raise BlobStoreError(f"Failed to open object: {key}")
        data = self.objects[key]
        for i in range(0, len(data), chunk_size):
            yield data[i:i + chunk_size]

    # ── deletes ───────────────────────────────────────────────
    async def delete(self, key: str) -> bool:
        self.deleted.append(key)
        self.objects.pop(key, None)
        return True

    async def delete_prefix(self, prefix: str) -> int:
        keys = [k for k in self.objects if k.startswith(prefix)]
        for k in keys:
            del self.objects[k]
        return len(keys)


class FakeBus:
    def __init__(self) -> None:
        self.published: List[Tuple[str, Dict[str, Any]]] = []
        self.fail = False
        self.fail_for: Set[str] = set()  # media ids whose events are rejected
        self.attempts = 0

    async def publish(self, subject: str, data: bytes) -> None:
        self.attempts += 1
        payload = json.loads(data)
        if self.fail:
            raise ConnectionError("bus unavailable")
        if str(payload.get("media_id")) in self.fail_for:
            raise ConnectionError(f"bus rejected {subject}")
        self.published.append((subject, payload))

    def subjects(self) -> List[str]:
        return [s for s, _ in self.published]


class ScriptedScanner:
    def __init__(self, verdict: ScanVerdict = ScanVerdict.CLEAN, *, error: Optional[Exception] = None) -> None:
        self.verdict = verdict
        self.error = error
        self.calls: List[Tuple[str, str]] = []

    async def scan(self, bucket: str, key: str) -> ScanVerdict:
        self.calls.append((bucket, key))
        if self.error is not None:
            raise self.error
        return self.verdict


class ScriptedDetector:
    def __init__(self, mime: Optional[str] = "video/mp4", *, error: Optional[Exception] = None) -> None:
        self.mime = mime
        self.error = error
        self.calls: List[Tuple[str, str]] = []

    async def detect(self, bucket: str, key: str) -> Optional[str]:
        self.calls.append((bucket, key))
        if self.error is not None:
            raise self.error
        return self.mime


@pytest.fixture()
def fake_blob() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture()
def fake_bus() -> FakeBus:
    return FakeBus()


@pytest.fixture()
def scanner() -> ScriptedScanner:
    return ScriptedScanner()


@pytest.fixture()
def detector() -> ScriptedDetector:
    return ScriptedDetector()


__all__ = [
    "MP4_HEADER",
    "mp4_bytes",
    "sha256_hex",
    "FakeBlobStore",
    "FakeBus",
    "ScriptedScanner",
    "ScriptedDetector",
    "fake_blob",
    "fake_bus",
    "scanner",
    "detector",
]
