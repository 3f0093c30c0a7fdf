# ingest/utils/aws.py
from __future__ import annotations

"""
🧊 BBMovie Ingest • S3 Blob Store Gateway
=========================================

Thin, hardened wrapper over boto3 used by:
- Upload sessions (multipart create / part presign / complete / abort)
- Completion checksums (streamed object reads)
- Cleanup of rejected, expired and deleted media
- The transcode worker's probe strategies (presigned GET, ranged GET, streaming)

🎯 Goals
--------
- Explicit timeouts + bounded retries
- Key normalization (no leading slash, no `..`)
- Pluggable creds (env / role / IRSA) with explicit override if provided
- Never block the event loop: every boto3 call runs in `asyncio.to_thread`
- Zero secret leakage in logs (presigned URLs are never logged)

🔗 Contract
-----------
`BlobStore` is the protocol the services depend on; `S3Client` implements it
and tests substitute an in-memory fake.
"""

from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence
import asyncio
import logging
import re

import boto3
import botocore
from botocore.config import Config as BotoConfig

from ingest.core.config import settings
from ingest.core.exceptions import BlobStoreError

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# 🧾 Protocol consumed by services
# ─────────────────────────────────────────────────────────────────────────────

class BlobStore(Protocol):
    bucket: str

    async def create_multipart_upload(self, key: str, *, content_type: str) -> str: ...
    async def presign_part(self, key: str, provider_upload_id: str, part_number: int, *, expires_in: int) -> str: ...
    async def complete_multipart_upload(self, key: str, provider_upload_id: str, parts: Sequence[Dict[str, Any]]) -> int: ...
    async def abort_multipart_upload(self, key: str, provider_upload_id: str) -> None: ...
    async def presigned_get(self, key: str, *, expires_in: int = 300) -> str: ...
    async def read_range(self, key: str, start: int, end: int) -> bytes: ...
    def iter_chunks(self, key: str, *, chunk_size: int) -> AsyncIterator[bytes]: ...
    async def delete(self, key: str) -> bool: ...
    async def delete_prefix(self, prefix: str) -> int: ...


# ─────────────────────────────────────────────────────────────────────────────
# 🧰 Key and value validation
# ─────────────────────────────────────────────────────────────────────────────

_KEY_ALLOWED_RE = re.compile(r"[A-Za-z0-9._\-/+=@() ]+")


def _normalize_key(key: str) -> str:
    """
    Normalize and validate S3 object keys.

    Steps
    -----
    1) Coerce to str, strip whitespace
    2) Remove leading '/'
    3) Collapse '//' runs
    4) Reject path traversal ('..') and disallowed characters

    Raises
    ------
    BlobStoreError
        If key is empty or contains unsafe characters.
    """
    k = str(key or "").strip().lstrip("/")
    k = re.sub(r"/{2,}", "/", k)
    if not k:
        raise BlobStoreError("Invalid storage key: empty")
    if ".." in k:
        raise BlobStoreError("Invalid storage key: path traversal detected")
    if not _KEY_ALLOWED_RE.fullmatch(k):
        raise BlobStoreError("Invalid storage key: contains forbidden characters")
    return k


def _secret_value(v: Any) -> Optional[str]:
    """Return the underlying secret string for SecretStr or plain values."""
    if v is None:
        return None
    return v.get_secret_value() if hasattr(v, "get_secret_value") else str(v)


def _error_code(e: Exception) -> str:
    if isinstance(e, botocore.exceptions.ClientError):
        return str(e.response.get("Error", {}).get("Code") or "")
    return ""


# ─────────────────────────────────────────────────────────────────────────────
# 📦 S3 Client
# ─────────────────────────────────────────────────────────────────────────────

class S3Client:
    """
    High-level S3 wrapper with safe defaults.

    Parameters
    ----------
    bucket : str | None
        Destination bucket. Defaults to `settings.AWS_BUCKET_NAME`.
    region_name : str | None
        Defaults to `settings.AWS_REGION`.
    endpoint_url : str | None
        Custom S3-compatible endpoint (MinIO/LocalStack). Defaults to
        `settings.AWS_S3_ENDPOINT_URL`; path-style addressing is used then.

    Notes
    -----
    * Credentials: explicit `AWS_ACCESS_KEY_ID`/`AWS_SECRET_ACCESS_KEY` when
      configured, otherwise the standard AWS credential chain.
    * Retries/Timeouts: bounded retry policy (5 attempts) and short connect
      timeout help fail fast; reads use a longer timeout for streaming.
    """

    # ────────────────────────────────────────────────────────────────────────
    # 🔧 Construction
    # ────────────────────────────────────────────────────────────────────────

    def __init__(
        self,
        bucket: Optional[str] = None,
        *,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        sse_mode: Optional[str] = None,
        kms_key_id: Optional[str] = None,
    ) -> None:
        # 1) Resolve configuration from explicit args → settings
        self.bucket = bucket or settings.AWS_BUCKET_NAME
        if not self.bucket:
            raise BlobStoreError("AWS_BUCKET_NAME not configured")

        self.region = region_name or settings.AWS_REGION
        endpoint_cfg = endpoint_url or settings.AWS_S3_ENDPOINT_URL

        # SSE defaults (never log these)
        self._sse_mode = sse_mode or settings.AWS_SSE_MODE
        self._kms_key_id = kms_key_id or settings.AWS_KMS_KEY_ID

        # 2) Build the boto3 client with safe defaults
        cfg = BotoConfig(
            signature_version="s3v4",
            retries={"max_attempts": 5, "mode": "standard"},
            connect_timeout=3,
            read_timeout=60,
            s3={"addressing_style": "path" if endpoint_cfg else "virtual"},
        )

        client_kwargs: Dict[str, Any] = {"config": cfg, "region_name": self.region}
        if endpoint_cfg:
            client_kwargs["endpoint_url"] = endpoint_cfg
        ak = settings.AWS_ACCESS_KEY_ID
        sk = _secret_value(settings.AWS_SECRET_ACCESS_KEY)
        st = _secret_value(settings.AWS_SESSION_TOKEN)
        if ak and sk:
            client_kwargs["aws_access_key_id"] = ak
            client_kwargs["aws_secret_access_key"] = sk
            if st:
                client_kwargs["aws_session_token"] = st

        try:
            self.client = boto3.client("s3", **client_kwargs)
        except Exception as e:  # pragma: no cover
            raise BlobStoreError(f"Failed to create S3 client: {e}") from e

        self._repr = f"S3Client(bucket={self.bucket}, region={self.region}, endpoint={'yes' if endpoint_cfg else 'no'})"

    # ────────────────────────────────────────────────────────────────────────
    # 🧩 Multipart uploads
    # ────────────────────────────────────────────────────────────────────────

    async def create_multipart_upload(self, key: str, *, content_type: str) -> str:
        """Start a multipart upload and return the provider's upload id."""
        k = _normalize_key(key)
        args: Dict[str, Any] = {"Bucket": self.bucket, "Key": k, "ContentType": content_type}
        if self._sse_mode:
            args["ServerSideEncryption"] = self._sse_mode
            if self._sse_mode == "aws:kms" and self._kms_key_id:
                args["SSEKMSKeyId"] = self._kms_key_id
        try:
            resp = await asyncio.to_thread(self.client.create_multipart_upload, **args)
        except Exception as e:
            raise BlobStoreError(f"Failed to create multipart upload: {e}") from e
        return str(resp["UploadId"])

    async def presign_part(
        self,
        key: str,
        provider_upload_id: str,
        part_number: int,
        *,
        expires_in: int,
    ) -> str:
        """Presigned `UploadPart` URL for one part (signing is local, no I/O)."""
        k = _normalize_key(key)
        try:
            return self.client.generate_presigned_url(
                ClientMethod="upload_part",
                Params={
                    "Bucket": self.bucket,
                    "Key": k,
                    "UploadId": provider_upload_id,
                    "PartNumber": int(part_number),
                },
                ExpiresIn=int(expires_in),
                HttpMethod="PUT",
            )
        except Exception as e:
            raise BlobStoreError(f"Failed to presign part {part_number}: {e}") from e

    async def complete_multipart_upload(
        self,
        key: str,
        provider_upload_id: str,
        parts: Sequence[Dict[str, Any]],
    ) -> int:
        """
        Stitch the uploaded parts into one object and return its final size.

        `parts` items carry `PartNumber` and `ETag`; they are sent ascending.
        """
        k = _normalize_key(key)
        ordered: List[Dict[str, Any]] = sorted(
            ({"PartNumber": int(p["PartNumber"]), "ETag": str(p["ETag"])} for p in parts),
            key=lambda p: p["PartNumber"],
        )
        try:
            await asyncio.to_thread(
                self.client.complete_multipart_upload,
                Bucket=self.bucket,
                Key=k,
                UploadId=provider_upload_id,
                MultipartUpload={"Parts": ordered},
            )
        except Exception as e:
            if _error_code(e) != "NoSuchUpload":
                raise BlobStoreError(f"Failed to complete multipart upload: {e}") from e
            # already stitched by an earlier call whose result was lost
            logger.info("Multipart upload %s already finalized; checking %s", provider_upload_id, k)
        try:
            head = await asyncio.to_thread(self.client.head_object, Bucket=self.bucket, Key=k)
        except Exception as e:
            raise BlobStoreError(f"Failed to complete multipart upload: {e}") from e
        return int(head.get("ContentLength") or 0)

    async def abort_multipart_upload(self, key: str, provider_upload_id: str) -> None:
        """Release parts held by the provider; an unknown upload id is a no-op."""
        k = _normalize_key(key)
        try:
            await asyncio.to_thread(
                self.client.abort_multipart_upload,
                Bucket=self.bucket,
                Key=k,
                UploadId=provider_upload_id,
            )
        except Exception as e:
            if _error_code(e) in {"NoSuchUpload", "404"}:
                return
            raise BlobStoreError(f"Failed to abort multipart upload: {e}") from e

    # ────────────────────────────────────────────────────────────────────────
    # 🔐 Reads
    # ────────────────────────────────────────────────────────────────────────

    async def presigned_get(self, key: str, *, expires_in: int = 300) -> str:
        """Short-lived presigned GET URL."""
        k = _normalize_key(key)
        try:
            return self.client.generate_presigned_url(
                ClientMethod="get_object",
                Params={"Bucket": self.bucket, "Key": k},
                ExpiresIn=int(expires_in),
            )
        except Exception as e:
            raise BlobStoreError(f"Failed to create presigned GET: {e}") from e

    async def read_range(self, key: str, start: int, end: int) -> bytes:
        """Read bytes `[start, end]` (inclusive, like the HTTP Range header)."""
        k = _normalize_key(key)

        def _read() -> bytes:
            resp = self.client.get_object(Bucket=self.bucket, Key=k, Range=f"bytes={int(start)}-{int(end)}")
            body = resp["Body"]
            try:
                return body.read()
            finally:
                body.close()

        try:
            return await asyncio.to_thread(_read)
        except Exception as e:
            raise BlobStoreError(f"Failed to read range: {e}") from e

    async def iter_chunks(self, key: str, *, chunk_size: int) -> AsyncIterator[bytes]:
        """Stream the object body in bounded chunks."""
        k = _normalize_key(key)
        try:
            resp = await asyncio.to_thread(self.client.get_object, Bucket=self.bucket, Key=k)
        except Exception as e:
            raise BlobStoreError(f"Failed to open object: {e}") from e
        body = resp["Body"]
        try:
            while True:
                chunk = await asyncio.to_thread(body.read, int(chunk_size))
                if not chunk:
                    break
                yield chunk
        finally:
            body.close()

    # ────────────────────────────────────────────────────────────────────────
    # 🧹 Deletes (best-effort)
    # ────────────────────────────────────────────────────────────────────────

    async def delete(self, key: str) -> bool:
        """
        Best-effort delete.

        Behavior
        --------
        - Returns True on successful request submission or "NoSuchKey".
        - Returns False only on non-ignorable errors (logged at WARNING).
        """
        k = _normalize_key(key)
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=k)
            return True
        except Exception as e:
            if _error_code(e) in {"NoSuchKey", "404"}:
                return True
            logger.warning("delete_object failed (non-fatal): %s", e)
            return False

    async def delete_prefix(self, prefix: str) -> int:
        """Delete every object under `prefix`; returns the number removed."""
        p = _normalize_key(prefix).rstrip("/") + "/"

        def _purge() -> int:
            removed = 0
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=p):
                keys = [{"Key": o["Key"]} for o in page.get("Contents", [])]
                if not keys:
                    continue
                self.client.delete_objects(Bucket=self.bucket, Delete={"Objects": keys, "Quiet": True})
                removed += len(keys)
            return removed

        try:
            return await asyncio.to_thread(_purge)
        except Exception as e:
            logger.warning("delete_prefix failed (non-fatal): %s", e)
            return 0

    def __repr__(self) -> str:  # pragma: no cover
        return self._repr


__all__ = ["BlobStore", "S3Client", "BlobStoreError"]
