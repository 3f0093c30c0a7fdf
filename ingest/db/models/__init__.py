# ingest/db/models/__init__.py
"""
BBMovie Ingest: ORM model registry
===================================

Import all ORM models so their tables are registered on `Base.metadata`.
Keep this file import-only; no runtime logic.
"""

from ingest.db.base_class import Base

from .upload_session import UploadSession
from .chunk_upload_status import ChunkUploadStatus
from .media_file import MediaFile
from .outbox_event import OutboxEvent

__all__ = [
    "Base",
    "UploadSession",
    "ChunkUploadStatus",
    "MediaFile",
    "OutboxEvent",
]
