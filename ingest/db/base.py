# ingest/db/base.py
"""
Central import point for Alembic autogeneration and test `create_all`.

Importing this module registers every model on `Base.metadata`.
"""

from ingest.db.base_class import Base  # noqa: F401
from ingest.db.models import (  # noqa: F401
    ChunkUploadStatus,
    MediaFile,
    OutboxEvent,
    UploadSession,
)
