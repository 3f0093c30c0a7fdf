# ingest/utils/maintenance.py
from __future__ import annotations

"""
BBMovie Ingest: background sweeps
----------------------------------
- Outbox publish (every OUTBOX_PUBLISH_INTERVAL_SECONDS) and cleanup
- Upload-session expiry, stale-media expiry and the PROCESSING timeout
- Validation of UPLOADED files left behind by failed background tasks

Replica safety: the outbox claim uses SKIP LOCKED; the other sweeps hold a
Redis lock per job (skipped when another replica has it). Jobs never raise.
"""

import logging
import os
from dataclasses import dataclass
from datetime import timezone
from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ingest.core.config import settings
from ingest.core.redis_client import RedisClient, redis_wrapper
from ingest.services.media_state import MediaStateMachine
from ingest.services.outbox import OutboxPublisher
from ingest.services.upload_sessions import UploadSessionManager
from ingest.services.validation import MediaValidator

logger = logging.getLogger("maintenance")


# ─────────────────────────────────────────────
# ⚙️ Config (ENV overrides)
# ─────────────────────────────────────────────
@dataclass(frozen=True)
class MaintenanceConfig:
    lock_ttl_seconds: int = int(os.getenv("MAINTENANCE_LOCK_TTL_SECONDS", "300"))
    lock_wait_seconds: float = float(os.getenv("MAINTENANCE_LOCK_WAIT_SECONDS", "0"))


_CFG = MaintenanceConfig()


# ─────────────────────────────────────────────
# 🧹 Jobs
# ─────────────────────────────────────────────
class MaintenanceJobs:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: OutboxPublisher,
        uploads: UploadSessionManager,
        state: MediaStateMachine,
        validator: MediaValidator,
        redis: RedisClient = redis_wrapper,
    ) -> None:
        self.session_factory = session_factory
        self.publisher = publisher
        self.uploads = uploads
        self.state = state
        self.validator = validator
        self.redis = redis

    async def _locked(self, job_id: str, fn: Callable[[], Awaitable[object]]) -> None:
        try:
            if await self.redis.is_connected():
                async with self.redis.lock(
                    f"maintenance:{job_id}:lock",
                    timeout=_CFG.lock_ttl_seconds,
                    blocking_timeout=_CFG.lock_wait_seconds,
                ):
                    await fn()
            else:
                logger.debug("Redis unavailable; running %s without a lock", job_id)
                await fn()
        except TimeoutError:
            logger.debug("%s skipped: lock held by another worker", job_id)
        except Exception:
            logger.exception("Maintenance job %s failed", job_id)

    async def publish_outbox(self) -> None:
        try:
            await self.publisher.publish_pending()
        except Exception:
            logger.exception("Outbox publish sweep failed")

    async def clean_outbox(self) -> None:
        await self._locked("outbox-clean", self.publisher.clean_sent)

    async def expire_sessions(self) -> None:
        async def run() -> None:
            async with self.session_factory() as db:
                await self.uploads.expire_sessions(db)

        await self._locked("session-expiry", run)

    async def expire_stale_media(self) -> None:
        async def run() -> None:
            async with self.session_factory() as db:
                await self.state.expire_stale(db)

        await self._locked("media-stale", run)

    async def fail_stuck_processing(self) -> None:
        async def run() -> None:
            async with self.session_factory() as db:
                await self.state.fail_stuck_processing(db)

        await self._locked("media-processing-timeout", run)

    async def validate_uploaded(self) -> None:
        async def run() -> None:
            async with self.session_factory() as db:
                await self.validator.validate_pending(db)

        await self._locked("validation", run)


# ─────────────────────────────────────────────
# ⏰ Scheduler
# ─────────────────────────────────────────────
def start_maintenance_scheduler(jobs: MaintenanceJobs, *, jitter_seconds: int | None = None) -> AsyncIOScheduler:
    """Register every sweep on one AsyncIOScheduler and start it."""
    jitter = settings.SWEEP_JITTER_SECONDS if jitter_seconds is None else int(jitter_seconds)
    scheduler = AsyncIOScheduler(timezone=timezone.utc)

    def add(fn: Callable[[], Awaitable[None]], job_id: str, **interval: int) -> None:
        scheduler.add_job(
            fn,
            IntervalTrigger(jitter=jitter, timezone=timezone.utc, **interval),
            id=job_id,
            max_instances=1,
            coalesce=True,
        )

    add(jobs.publish_outbox, "outbox_publish", seconds=settings.OUTBOX_PUBLISH_INTERVAL_SECONDS)
    add(jobs.clean_outbox, "outbox_clean", minutes=settings.OUTBOX_CLEAN_INTERVAL_MINUTES)
    add(jobs.expire_sessions, "session_expiry", minutes=settings.SESSION_SWEEP_INTERVAL_MINUTES)
    add(jobs.expire_stale_media, "media_stale", minutes=settings.SESSION_SWEEP_INTERVAL_MINUTES)
    add(jobs.fail_stuck_processing, "media_processing_timeout", minutes=settings.SESSION_SWEEP_INTERVAL_MINUTES)
    add(jobs.validate_uploaded, "validation", seconds=settings.VALIDATION_SWEEP_INTERVAL_SECONDS)

    scheduler.start()
    logger.info(
        "Maintenance scheduler started | outbox=%ss clean=%sm sessions=%sm validation=%ss jitter=%ss",
        settings.OUTBOX_PUBLISH_INTERVAL_SECONDS,
        settings.OUTBOX_CLEAN_INTERVAL_MINUTES,
        settings.SESSION_SWEEP_INTERVAL_MINUTES,
        settings.VALIDATION_SWEEP_INTERVAL_SECONDS,
        jitter,
    )
    return scheduler


__all__ = ["MaintenanceConfig", "MaintenanceJobs", "start_maintenance_scheduler"]
