"""
BBMovie Ingest • API v1 Router Aggregator

    from ingest.api.v1.routers import router as v1_router
    app.include_router(v1_router, prefix="/api/v1")

Auth (gateway headers) lives in the child routers.
"""

from fastapi import APIRouter

from .media import router as media_router
from .uploads import router as uploads_router


def build_v1_router() -> APIRouter:
    """Compose uploads and media routes into one `APIRouter`."""
    v1 = APIRouter()
    v1.include_router(uploads_router)
    v1.include_router(media_router)
    return v1


router = build_v1_router()

__all__ = ["router", "build_v1_router", "uploads_router", "media_router"]
