from __future__ import annotations

"""
Streaming content hashes for deduplication.

Both digests are SHA-256 (hex):
- **checksum**: the whole object, authoritative dedup key.
- **sparse checksum**: the first `SPARSE_SAMPLE_BYTES` only, available as soon
  as the first chunk lands; used for the early (advisory) duplicate hint.

One pass over the object computes both, with memory bounded by the read
chunk size.
"""

from dataclasses import dataclass
import hashlib
from typing import AsyncIterator, Optional

from ingest.core.config import settings


@dataclass(frozen=True)
class ContentDigest:
    checksum: str
    sparse_checksum: str
    size: int


def sparse_checksum_of(data: bytes, *, sample_bytes: Optional[int] = None) -> str:
    """SHA-256 of the leading sample of an in-memory payload."""
    n = int(sample_bytes or settings.SPARSE_SAMPLE_BYTES)
    return hashlib.sha256(data[:n]).hexdigest()


async def digest_stream(
    chunks: AsyncIterator[bytes],
    *,
    sample_bytes: Optional[int] = None,
) -> ContentDigest:
    """Hash an async byte stream into full + sparse digests."""
    limit = int(sample_bytes or settings.SPARSE_SAMPLE_BYTES)
    full = hashlib.sha256()
    sparse = hashlib.sha256()
    sampled = 0
    size = 0
    async for chunk in chunks:
        if not chunk:
            continue
        full.update(chunk)
        size += len(chunk)
        if sampled < limit:
            take = chunk[: limit - sampled]
            sparse.update(take)
            sampled += len(take)
    return ContentDigest(checksum=full.hexdigest(), sparse_checksum=sparse.hexdigest(), size=size)


def normalize_hex_digest(value: Optional[str]) -> Optional[str]:
    """Lower-case a client-declared hex digest; None for blanks."""
    v = (value or "").strip().lower()
    return v or None


__all__ = ["ContentDigest", "digest_stream", "sparse_checksum_of", "normalize_hex_digest"]
