from __future__ import annotations

"""
Transcode probe strategy chain.

Several ways to read a source's metadata, tried in descending priority until
one works:

| strategy      | priority | supports                 | data through the worker |
|---------------|---------:|--------------------------|-------------------------|
| presigned URL |      100 | video extensions         | none (ffprobe reads URL) |
| partial GET   |       50 | mp4 / mov / m4v          | first PROBE_PARTIAL_BYTES |
| stream pipe   |       10 | anything                 | object body → stdin      |

The chain is built once from an explicit list and keeps it as an immutable,
priority-sorted tuple.
Every strategy reads through one blob store; a request for any other bucket
fails instead of silently reading the store's own bucket.
"""

from abc import ABC, abstractmethod
import asyncio
from dataclasses import asdict, dataclass
import logging
import os
import tempfile
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

from ingest.core.config import settings
from ingest.core.exceptions import BlobStoreError, ProbeException
from ingest.utils.aws import BlobStore
from ingest.worker.ffprobe import FFprobeError, FFprobeRunner

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────
# Result
# ─────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class ProbeResult:
    codec: str
    width: int
    height: int
    duration: float
    bitrate: Optional[int]
    strategy: str

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_ffprobe(cls, data: Dict[str, Any], *, strategy: str) -> "ProbeResult":
        """Pick the first video stream of ffprobe's JSON."""
        stream = next((s for s in data.get("streams") or [] if s.get("codec_type") == "video"), None)
        if stream is None:
            raise FFprobeError("No video stream found")
        fmt = data.get("format") or {}
        return cls(
            codec=str(stream.get("codec_name") or "unknown"),
            width=int(stream.get("width") or 0),
            height=int(stream.get("height") or 0),
            duration=_to_float(fmt.get("duration")) or _to_float(stream.get("duration")) or 0.0,
            bitrate=_to_int(fmt.get("bit_rate")) or _to_int(stream.get("bit_rate")),
            strategy=strategy,
        )


def _to_float(v: Any) -> Optional[float]:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return f if f >= 0 else None


def _to_int(v: Any) -> Optional[int]:
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def _extension(key: str) -> str:
    tail = key.rsplit("/", 1)[-1]
    return tail.rsplit(".", 1)[-1].lower() if "." in tail else ""


def _ensure_bucket(blob: BlobStore, bucket: str) -> None:
    """The blob store reads one bucket; a request naming another is refused."""
    if bucket and bucket != blob.bucket:
        raise BlobStoreError(f"Bucket {bucket!r} is not served by this worker (store bucket {blob.bucket!r})")


# ─────────────────────────────────────────────────────────────
# Strategies
# ─────────────────────────────────────────────────────────────
class ProbeStrategy(ABC):
    name: str = "base"
    priority: int = 0

    @abstractmethod
    def supports(self, bucket: str, key: str) -> bool: ...

    @abstractmethod
    async def probe(self, bucket: str, key: str) -> ProbeResult: ...

    def __repr__(self) -> str:  # pragma: no cover
        return f"{type(self).__name__}(priority={self.priority})"


class PresignedUrlProbeStrategy(ProbeStrategy):
    """ffprobe reads the object over a short-lived presigned GET."""

    name = "presigned_url"
    priority = 100

    def __init__(
        self,
        blob: BlobStore,
        runner: FFprobeRunner,
        *,
        extensions: Optional[Iterable[str]] = None,
        url_ttl: Optional[int] = None,
    ) -> None:
        self.blob = blob
        self.runner = runner
        self.extensions = frozenset(extensions or settings.PROBE_VIDEO_EXTENSIONS)
        self.url_ttl = int(url_ttl or settings.PROBE_PRESIGN_TTL_SECONDS)

    def supports(self, bucket: str, key: str) -> bool:
        return _extension(key) in self.extensions

    async def probe(self, bucket: str, key: str) -> ProbeResult:
        _ensure_bucket(self.blob, bucket)
        url = await self.blob.presigned_get(key, expires_in=self.url_ttl)
        data = await self.runner.probe_target(url)
        return ProbeResult.from_ffprobe(data, strategy=self.name)


class PartialDownloadProbeStrategy(ProbeStrategy):
    """Ranged GET of the leading bytes into a temp file (faststart containers)."""

    name = "partial_download"
    priority = 50

    def __init__(
        self,
        blob: BlobStore,
        runner: FFprobeRunner,
        *,
        extensions: Optional[Iterable[str]] = None,
        partial_bytes: Optional[int] = None,
    ) -> None:
        self.blob = blob
        self.runner = runner
        self.extensions = frozenset(extensions or settings.PROBE_PARTIAL_EXTENSIONS)
        self.partial_bytes = int(partial_bytes or settings.PROBE_PARTIAL_BYTES)

    def supports(self, bucket: str, key: str) -> bool:
        return _extension(key) in self.extensions

    async def probe(self, bucket: str, key: str) -> ProbeResult:
        _ensure_bucket(self.blob, bucket)
        head = await self.blob.read_range(key, 0, self.partial_bytes - 1)
        path = await asyncio.to_thread(_spill, head, _extension(key))
        try:
            data = await self.runner.probe_target(path)
        finally:
            await asyncio.to_thread(_unlink_quietly, path)
        return ProbeResult.from_ffprobe(data, strategy=self.name)


def _spill(data: bytes, ext: str) -> str:
    fd, path = tempfile.mkstemp(prefix="probe-", suffix=f".{ext or 'bin'}")
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)
    return path


def _unlink_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


class StreamPipeProbeStrategy(ProbeStrategy):
    """Object body piped straight into ffprobe's stdin."""

    name = "stream_pipe"
    priority = 10

    def __init__(self, blob: BlobStore, runner: FFprobeRunner, *, chunk_size: int = 1024 * 1024) -> None:
        self.blob = blob
        self.runner = runner
        self.chunk_size = int(chunk_size)

    def supports(self, bucket: str, key: str) -> bool:
        return True

    async def probe(self, bucket: str, key: str) -> ProbeResult:
        _ensure_bucket(self.blob, bucket)
        data = await self.runner.probe_stream(self.blob.iter_chunks(key, chunk_size=self.chunk_size))
        return ProbeResult.from_ffprobe(data, strategy=self.name)


# ─────────────────────────────────────────────────────────────
# Chain
# ─────────────────────────────────────────────────────────────
class ProbeChain:
    def __init__(self, strategies: Sequence[ProbeStrategy]) -> None:
        self.strategies: Tuple[ProbeStrategy, ...] = tuple(
            sorted(strategies, key=lambda s: s.priority, reverse=True)
        )
        logger.info("Probe chain ready: %s", ", ".join(self.strategy_names) or "(empty)")

    @property
    def strategy_names(self) -> Tuple[str, ...]:
        return tuple(s.name for s in self.strategies)

    def supports(self, bucket: str, key: str) -> bool:
        return any(s.supports(bucket, key) for s in self.strategies)

    async def probe(self, bucket: str, key: str) -> ProbeResult:
        """
        First successful result in priority order.

        Raises `ProbeException` (wrapping the last failure) when every
        supporting strategy failed or none supports the object.
        """
        last_error: Optional[BaseException] = None
        for strategy in self.strategies:
            if not strategy.supports(bucket, key):
                logger.debug("Probe strategy %s skips %s/%s", strategy.name, bucket, key)
                continue
            try:
                result = await strategy.probe(bucket, key)
            except Exception as e:  # noqa: BLE001
                logger.warning("Probe strategy %s failed for %s/%s: %s", strategy.name, bucket, key, e)
                last_error = e
                continue
            logger.info(
                "Probed %s/%s via %s: %sx%s %s %.2fs",
                bucket, key, strategy.name, result.width, result.height, result.codec, result.duration,
            )
            return result

        raise ProbeException(f"All probe strategies failed for {bucket}/{key}", last_error=last_error)


def build_default_chain(blob: BlobStore, runner: Optional[FFprobeRunner] = None) -> ProbeChain:
    runner = runner or FFprobeRunner()
    return ProbeChain(
        [
            PresignedUrlProbeStrategy(blob, runner),
            PartialDownloadProbeStrategy(blob, runner),
            StreamPipeProbeStrategy(blob, runner),
        ]
    )


__all__ = [
    "ProbeResult",
    "ProbeStrategy",
    "PresignedUrlProbeStrategy",
    "PartialDownloadProbeStrategy",
    "StreamPipeProbeStrategy",
    "ProbeChain",
    "build_default_chain",
]
