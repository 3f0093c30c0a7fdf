# ingest/main.py
from __future__ import annotations

"""
# BBMovie Ingest API: Application Entrypoint (FastAPI)

ASGI application factory and lifecycle for the media ingestion pipeline:
multipart upload sessions, deduplication, the media state machine and the
reliable outbox that feeds the transcode workers.

## Middleware order
1) request id → 2) gzip

## Background work
When `MAINTENANCE_SCHEDULER` is on, the lifespan starts an APScheduler loop
for outbox publishing/cleanup, session expiry, stale-media expiry and the
validation sweep. Each job takes a Redis lock so several replicas can run it.

## Probes
- `/healthz`: liveness (process up).
- `/readyz`: readiness (quick DB/Redis checks).
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator
import logging
import os

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.gzip import GZipMiddleware
from starlette.responses import JSONResponse

from ingest.core import logger as _logsetup  # noqa: F401
from ingest.core.config import settings
from ingest.core.dependencies import get_blob_store
from ingest.core.exception_handlers import (
    app_exception_handler,
    global_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from ingest.core.exceptions import AppException
from ingest.core.redis_client import redis_wrapper
from ingest.db.session import async_engine, async_session_maker, db_healthcheck
from ingest.middleware.request_id import RequestIDMiddleware
from ingest.services.media_state import MediaStateMachine
from ingest.services.outbox import OutboxPublisher
from ingest.services.upload_sessions import UploadSessionManager
from ingest.services.validation import DisabledVirusScanner, MediaValidator, SignatureContentTypeDetector
from ingest.utils.maintenance import MaintenanceJobs, start_maintenance_scheduler
from ingest.utils.messaging import RedisStreamBus

logger = logging.getLogger("ingest")


def build_maintenance_jobs() -> MaintenanceJobs:
    """Wire the periodic sweeps against the process-wide engine, bus and blob store."""
    blob = get_blob_store()
    state = MediaStateMachine(blob)
    return MaintenanceJobs(
        session_factory=async_session_maker,
        publisher=OutboxPublisher(RedisStreamBus(), async_session_maker),
        uploads=UploadSessionManager(blob, state=state),
        state=state,
        validator=MediaValidator(DisabledVirusScanner(), SignatureContentTypeDetector(blob), state=state, blob=blob),
    )


# ─────────────────────────────────────────────────────────────────────────────
# 🔄 Lifespan: startup & shutdown
# ─────────────────────────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Startup:
        - Best-effort connect to Redis (non-fatal on failure).
        - Start the maintenance scheduler when enabled.

    Shutdown:
        - Stop the scheduler, dispose the DB engine, close Redis.
    """
    logger.info("✅ BBMovie Ingest starting up (env=%s)", settings.ENV)

    try:
        await redis_wrapper.connect()
        logger.info("🔌 Redis connected")
    except Exception:
        logger.exception("Redis connect failed (continuing in degraded mode)")

    scheduler = None
    if settings.MAINTENANCE_SCHEDULER:
        try:
            scheduler = start_maintenance_scheduler(build_maintenance_jobs())
        except Exception:
            logger.exception("Maintenance scheduler not started")

    try:
        yield
    finally:
        if scheduler is not None:
            try:
                scheduler.shutdown(wait=False)
                logger.info("🛑 Maintenance scheduler stopped")
            except Exception:
                logger.exception("Error stopping maintenance scheduler")

        try:
            await async_engine.dispose()
            logger.info("🛑 Database engine disposed")
        except Exception:
            logger.exception("Error disposing DB engine")

        try:
            await redis_wrapper.close()
            logger.info("🛑 Redis connection closed")
        except Exception:
            logger.exception("Error closing Redis client")

        logger.info("🛑 BBMovie Ingest shutting down")


# ─────────────────────────────────────────────────────────────────────────────
# 🏗️ App factory
# ─────────────────────────────────────────────────────────────────────────────
def create_app() -> FastAPI:
    """Build the FastAPI app: middleware, exception handlers, routers and probes."""
    enable_docs = settings.ENABLE_DOCS
    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        docs_url="/docs" if enable_docs else None,
        redoc_url="/redoc" if enable_docs else None,
        openapi_url="/openapi.json" if enable_docs else None,
        lifespan=lifespan,
    )

    # ── Middlewares (order matters) ─────────────────────────────────────────
    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(RequestIDMiddleware)  # outermost: every log line carries the id

    # ── Exception handlers ──────────────────────────────────────────────────
    app.add_exception_handler(AppException, app_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(HTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, global_exception_handler)  # type: ignore[arg-type]

    # ── Routers (versioned API) ─────────────────────────────────────────────
    from ingest.api.v1.routers import router as api_v1_router

    app.include_router(api_v1_router, prefix=settings.API_V1_STR)

    # ── Meta endpoints ──────────────────────────────────────────────────────
    @app.get("/healthz", tags=["meta"])
    async def healthz() -> dict[str, bool]:
        """Liveness probe; no external checks."""
        return {"ok": True}

    @app.get("/readyz", tags=["meta"])
    async def readyz() -> JSONResponse:
        """Readiness probe (DB + Redis)."""
        db_ok = await db_healthcheck()
        try:
            redis_ok = await redis_wrapper.is_connected()
        except Exception:
            redis_ok = False
        ready = bool(db_ok and redis_ok)
        return JSONResponse(
            {"ready": ready, "checks": {"db": db_ok, "redis": redis_ok}},
            status_code=200 if ready else 503,
        )

    return app


# ─────────────────────────────────────────────────────────────────────────────
# 🚀 Module-level ASGI app for Uvicorn
# ─────────────────────────────────────────────────────────────────────────────
app = create_app()
__all__ = ["create_app", "app", "build_maintenance_jobs"]


# Local dev runner (prefer: `uvicorn ingest.main:app --reload`)
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ingest.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("RELOAD", "1") == "1",
        log_level=os.getenv("LOG_LEVEL", "info"),
    )
