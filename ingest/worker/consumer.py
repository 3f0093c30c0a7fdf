from __future__ import annotations

"""
Transcode request consumer.

Per `media.transcode.requested` entry:

1) report PROCESSING (a redelivered entry for a file already PROCESSING
   continues from here)
2) run the probe chain
3) report COMPLETED with the probe metadata, or FAILED with the reason
4) ack once the report is committed

Superseded files (deleted, expired, already finished) are acked without
work. Unparseable entries are acked and logged. Database or bus errors
leave the entry unacked; it is re-read from the pending list on restart,
or claimed by another worker once it has been idle for
`WORKER_CLAIM_IDLE_SECONDS`.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ingest.core.config import settings
from ingest.core.exceptions import ProbeException
from ingest.schemas.enums import MediaStatus
from ingest.services.media_state import MediaStateMachine
from ingest.utils.messaging import PAYLOAD_FIELD, RedisStreamConsumer
from ingest.worker.probe import ProbeChain

logger = logging.getLogger("transcode-worker")

_IDLE_BACKOFF_SECONDS = 1.0


def _failure_reason(e: ProbeException) -> str:
    if e.last_error is None:
        return str(e)
    return f"{e}: {type(e.last_error).__name__}: {e.last_error}"[:512]


class TranscodeConsumer:
    def __init__(
        self,
        stream: RedisStreamConsumer,
        chain: ProbeChain,
        session_factory: async_sessionmaker[AsyncSession],
        state: Optional[MediaStateMachine] = None,
        *,
        claim_interval: Optional[float] = None,
    ) -> None:
        self.stream = stream
        self.chain = chain
        self.session_factory = session_factory
        self.state = state or MediaStateMachine()
        self.claim_interval = float(claim_interval or settings.WORKER_CLAIM_INTERVAL_SECONDS)

    async def _report(self, media_id: UUID, status: MediaStatus, **kwargs: Any):
        async with self.session_factory() as db:
            return await self.state.apply_worker_report(db, media_id, status, **kwargs)

    async def handle(self, payload: Dict[str, Any]) -> Optional[MediaStatus]:
        """Process one request; returns the reported outcome or None if superseded."""
        media_id = UUID(str(payload["media_id"]))
        bucket = str(payload.get("bucket") or "")
        key = str(payload["object_key"])

        started = await self._report(media_id, MediaStatus.PROCESSING)
        if started is None:
            async with self.session_factory() as db:
                current = await self.state.get_status(db, media_id)
            if current.status != MediaStatus.PROCESSING:
                return None
            logger.info("Resuming media %s already in PROCESSING", media_id)

        try:
            result = await self.chain.probe(bucket, key)
        except ProbeException as e:
            reason = _failure_reason(e)
            logger.warning("Probe failed for media %s: %s", media_id, reason)
            failed = await self._report(media_id, MediaStatus.FAILED, reason=reason)
            return MediaStatus.FAILED if failed is not None else None

        completed = await self._report(media_id, MediaStatus.COMPLETED, probe=result.as_dict())
        return MediaStatus.COMPLETED if completed is not None else None

    async def process_entry(self, entry_id: str, fields: Dict[str, Any]) -> None:
        try:
            payload = json.loads(fields[PAYLOAD_FIELD])
            UUID(str(payload["media_id"]))
            payload["object_key"]
        except (KeyError, TypeError, ValueError) as e:
            logger.error("Dropping malformed entry %s: %s", entry_id, e)
            await self.stream.ack(entry_id)
            return

        outcome = await self.handle(payload)
        await self.stream.ack(entry_id)
        logger.info(
            "Entry %s done: media=%s outcome=%s",
            entry_id, payload["media_id"], outcome.value if outcome else "superseded",
        )

    async def recover(self) -> int:
        """Claim entries a dead worker left unacked and process them; returns how many were claimed."""
        entries = await self.stream.claim_stale()
        for entry_id, fields in entries:
            try:
                await self.process_entry(entry_id, fields)
            except Exception:
                logger.exception("Claimed entry %s failed; left pending", entry_id)
        return len(entries)

    async def run(self, stop: asyncio.Event) -> None:
        """
        Drain this consumer's pending entries, then follow the stream until
        `stop`, claiming other workers' stale entries every `claim_interval`.
        """
        await self.stream.ensure_group()
        loop = asyncio.get_running_loop()
        pending = True
        next_claim = 0.0
        while not stop.is_set():
            if not pending and loop.time() >= next_claim:
                next_claim = loop.time() + self.claim_interval
                try:
                    await self.recover()
                except Exception:
                    logger.exception("Stale entry claim failed")
                if stop.is_set():
                    break
            try:
                entries = await self.stream.read(pending=pending)
            except Exception:
                logger.exception("Stream read failed")
                await asyncio.sleep(_IDLE_BACKOFF_SECONDS)
                continue
            failed = False
            for entry_id, fields in entries:
                try:
                    await self.process_entry(entry_id, fields)
                except Exception:
                    failed = True
                    logger.exception("Entry %s failed; left pending", entry_id)
                    await asyncio.sleep(_IDLE_BACKOFF_SECONDS)
            if pending and (failed or not entries):
                # a failing pending entry would otherwise be re-read forever
                pending = False


__all__ = ["TranscodeConsumer"]
