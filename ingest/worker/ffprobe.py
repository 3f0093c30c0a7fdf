from __future__ import annotations

"""
Async ffprobe runner.

`ffprobe -v quiet -print_format json -show_format -show_streams <target>`
against a URL, a local path, or `pipe:0` fed from an async byte stream.
Every call is bounded by `PROBE_TIMEOUT_SECONDS`; on timeout the process is
killed and reaped.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from ingest.core.config import settings

logger = logging.getLogger(__name__)

_BASE_ARGS: List[str] = ["-v", "quiet", "-print_format", "json", "-show_format", "-show_streams"]


class FFprobeError(RuntimeError):
    """ffprobe exited non-zero, timed out, or printed unusable output."""


class FFprobeRunner:
    def __init__(self, binary: Optional[str] = None, *, timeout: Optional[float] = None) -> None:
        self.binary = binary or settings.FFPROBE_BIN
        self.timeout = float(timeout or settings.PROBE_TIMEOUT_SECONDS)

    def _cmd(self, target: str) -> List[str]:
        return [self.binary, *_BASE_ARGS, target]

    async def probe_target(self, target: str) -> Dict[str, Any]:
        """Probe a URL or file path."""
        process = await asyncio.create_subprocess_exec(
            *self._cmd(target),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise FFprobeError(f"ffprobe timed out after {self.timeout:.0f}s")
        return self._decode(process.returncode, stdout, stderr)

    async def probe_stream(self, chunks: AsyncIterator[bytes]) -> Dict[str, Any]:
        """Pipe `chunks` into ffprobe's stdin (`pipe:0`)."""
        process = await asyncio.create_subprocess_exec(
            *self._cmd("pipe:0"),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        async def feed() -> None:
            assert process.stdin is not None
            try:
                async for chunk in chunks:
                    process.stdin.write(chunk)
                    await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                # ffprobe stops reading once it has the headers it needs
                pass
            finally:
                try:
                    process.stdin.close()
                except (BrokenPipeError, ConnectionResetError):
                    pass

        async def run() -> tuple:
            assert process.stdout is not None and process.stderr is not None
            _, out, err = await asyncio.gather(feed(), process.stdout.read(), process.stderr.read())
            await process.wait()
            return out, err

        try:
            stdout, stderr = await asyncio.wait_for(run(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise FFprobeError(f"ffprobe (pipe) timed out after {self.timeout:.0f}s")
        return self._decode(process.returncode, stdout, stderr)

    @staticmethod
    def _decode(returncode: Optional[int], stdout: bytes, stderr: bytes) -> Dict[str, Any]:
        if returncode != 0:
            msg = (stderr or b"").decode("utf-8", errors="ignore").strip()[:500]
            raise FFprobeError(f"ffprobe exited with {returncode}: {msg or 'no output'}")
        try:
            data = json.loads((stdout or b"").decode("utf-8", errors="ignore") or "{}")
        except json.JSONDecodeError as e:
            raise FFprobeError(f"ffprobe printed invalid JSON: {e}") from e
        if not data.get("streams"):
            raise FFprobeError("ffprobe found no streams")
        return data


__all__ = ["FFprobeRunner", "FFprobeError"]
