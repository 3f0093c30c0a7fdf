from __future__ import annotations

"""
BBMovie Ingest • Upload & Media API Schemas
===========================================

Request/response models for the thin HTTP layer over the upload session
manager and the media state machine. Service objects (ORM rows, dataclasses)
are converted with the `from_*` helpers so routes stay one-liners.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ingest.schemas.enums import MediaStatus, UploadPurpose


# === Requests =============================================================

class OpenSessionIn(BaseModel):
    """Client request for an upload slot."""
    purpose: UploadPurpose
    content_type: str = Field(..., min_length=3, max_length=127)
    expected_size: int = Field(..., description="Total bytes of the file")
    part_size: Optional[int] = Field(None, description="Bytes per part (default: UPLOAD_MIN_PART_BYTES)")
    filename: Optional[str] = Field(None, max_length=512)
    checksum: Optional[str] = Field(None, description="SHA-256 (hex) of the whole file, verified at completion")
    sparse_checksum: Optional[str] = Field(None, description="SHA-256 (hex) of the leading sample")


class PresignBatchIn(BaseModel):
    from_part: int = Field(..., ge=1)
    to_part: int = Field(..., ge=1)

    @model_validator(mode="after")
    def _ordered(self) -> "PresignBatchIn":
        if self.from_part > self.to_part:
            raise ValueError("from_part must be <= to_part")
        return self


class PartUploadedIn(BaseModel):
    etag: str = Field(..., min_length=1, max_length=256)


class PartFailedIn(BaseModel):
    reason: Optional[str] = Field(None, max_length=512)


class DuplicateHintIn(BaseModel):
    sparse_checksum: str = Field(..., min_length=64, max_length=64)


# === Responses ============================================================

class PartUrlOut(BaseModel):
    part_number: int
    url: str
    start_byte: int
    end_byte: int

    @classmethod
    def from_part(cls, part: Any) -> "PartUrlOut":
        return cls(part_number=part.part_number, url=part.url, start_byte=part.start_byte, end_byte=part.end_byte)


class SessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    upload_id: str
    purpose: UploadPurpose
    object_key: str
    content_type: str
    original_filename: Optional[str] = None
    expected_size: int
    part_size: int
    part_count: int
    expires_at: datetime
    completed: bool
    media_file_id: Optional[UUID] = None


class OpenSessionOut(BaseModel):
    session: SessionOut
    parts: List[PartUrlOut]
    presign_batch_max: int


class ProgressOut(BaseModel):
    upload_id: str
    total_parts: int
    uploaded_parts: int
    failed_parts: int
    pending_parts: int
    uploaded_bytes: int
    percent: float
    completed: bool
    part_statuses: Dict[int, str]


class MediaStatusOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    upload_id: str
    status: MediaStatus
    status_reason: Optional[str] = None
    mime_type: Optional[str] = None
    size_bytes: Optional[int] = None
    checksum: Optional[str] = None
    probe: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CompleteOut(BaseModel):
    media: MediaStatusOut
    deduplicated: bool = Field(..., description="True when linked to existing content")


class DuplicateHintOut(BaseModel):
    likely_duplicate: bool
    media_id: Optional[UUID] = None
