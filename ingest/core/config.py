# ingest/core/config.py
from __future__ import annotations

"""
# BBMovie Ingest: Centralized Configuration (Pydantic v2)

Single `settings` object with strongly-typed, environment-driven config.

## Goals
- Safe defaults for local/dev; explicit where prod needs secrets.
- Upload policy, dedup sampling, outbox cadence and probe limits live here so
  every sweep and service reads the same numbers.
- Optional external systems (S3/Redis) so imports never crash in dev.

## Usage
    from ingest.core.config import settings
"""

import logging
from typing import Annotated, List, Literal, Optional

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

log = logging.getLogger(__name__)
load_dotenv()  # harmless in prod; convenient in dev

MiB = 1024 * 1024
GiB = 1024 * MiB


# ─────────────────────────────────────────────────────────────
# Small helpers
# ─────────────────────────────────────────────────────────────
def _split_csv(v: str | None) -> list[str]:
    """Split a comma-separated string into a trimmed list (empty-safe)."""
    if not v:
        return []
    return [s.strip() for s in str(v).split(",") if s and s.strip()]


# ─────────────────────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────────────────────
class Settings(BaseSettings):
    """
    Global ingest settings sourced from environment.

    Storage:
        - `AWS_*` configure the S3-compatible blob store (MinIO/LocalStack via
          `AWS_S3_ENDPOINT_URL`).

    Database:
        - `DATABASE_URL_OVERRIDE` wins over the POSTGRES_* parts (handy for
          SQLite in tests and one-off scripts).

    Notes:
        - All sizes are bytes; all intervals carry their unit in the name.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # don't crash on unknown keys
    )

    # ── App meta ──────────────────────────────────────────────
    PROJECT_NAME: str = "BBMovie Ingest"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"
    ENV: Literal["development", "staging", "production"] = "development"
    ENABLE_DOCS: bool = True

    # ── Database (PostgreSQL) ─────────────────────────────────
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: SecretStr = SecretStr("postgres")
    POSTGRES_DB: str = "bbmovie_ingest"
    DATABASE_URL_OVERRIDE: Optional[str] = None
    DB_POOL_SIZE: int = Field(10, ge=1, le=200)
    DB_MAX_OVERFLOW: int = Field(20, ge=0, le=200)

    # ── Redis / Message bus ───────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"
    BUS_STREAM_MAXLEN: int = Field(100_000, ge=1_000)
    WORKER_CONSUMER_GROUP: str = "transcode-workers"
    WORKER_CONSUMER_NAME: Optional[str] = None  # defaults to the hostname
    WORKER_BLOCK_MS: int = Field(5_000, ge=100, le=60_000)

    # ── Blob store (S3 / MinIO) ───────────────────────────────
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[SecretStr] = None
    AWS_SESSION_TOKEN: Optional[SecretStr] = None
    AWS_REGION: str = "us-east-1"
    AWS_BUCKET_NAME: Optional[str] = "bbmovie-raw"
    AWS_S3_ENDPOINT_URL: Optional[str] = None
    AWS_SSE_MODE: Optional[Literal["AES256", "aws:kms"]] = None
    AWS_KMS_KEY_ID: Optional[str] = None

    # ── Upload policy ─────────────────────────────────────────
    UPLOAD_SESSION_TTL_HOURS: int = Field(24, ge=1, le=24 * 7)
    UPLOAD_MAX_BYTES: int = Field(50 * GiB, ge=1)
    UPLOAD_MIN_PART_BYTES: int = Field(5 * MiB, ge=1)
    UPLOAD_MAX_PARTS: int = Field(10_000, ge=1, le=10_000)
    UPLOAD_PRESIGN_TTL_SECONDS: int = Field(3600, ge=60, le=7 * 24 * 3600)
    UPLOAD_PRESIGN_BATCH_MAX: int = Field(100, ge=1, le=10_000)
    CHUNK_MAX_RETRIES: int = Field(3, ge=0, le=50)

    # ── Deduplication ─────────────────────────────────────────
    # Leading sample hashed (SHA-256) for the early duplicate hint.
    SPARSE_SAMPLE_BYTES: int = Field(1 * MiB, ge=1)
    CHECKSUM_READ_CHUNK_BYTES: int = Field(8 * MiB, ge=4096)

    # ── Outbox ────────────────────────────────────────────────
    OUTBOX_PUBLISH_INTERVAL_SECONDS: int = Field(30, ge=1)
    OUTBOX_MAX_RETRIES: int = Field(5, ge=1, le=100)
    OUTBOX_BATCH_SIZE: int = Field(100, ge=1, le=10_000)
    OUTBOX_RETRY_DELAY_SECONDS: int = Field(0, ge=0)
    OUTBOX_CLEAN_INTERVAL_MINUTES: int = Field(60, ge=1)
    OUTBOX_RETENTION_HOURS: int = Field(24, ge=1)

    # ── Sweeps ────────────────────────────────────────────────
    MAINTENANCE_SCHEDULER: bool = True
    SESSION_SWEEP_INTERVAL_MINUTES: int = Field(15, ge=1)
    MEDIA_STALE_TTL_HOURS: int = Field(48, ge=1)
    VALIDATION_SWEEP_INTERVAL_SECONDS: int = Field(60, ge=5)
    SWEEP_JITTER_SECONDS: int = Field(5, ge=0, le=300)

    # ── Probing (transcode worker) ────────────────────────────
    FFPROBE_BIN: str = "ffprobe"
    PROBE_TIMEOUT_SECONDS: int = Field(60, ge=1, le=3600)
    PROBE_PARTIAL_BYTES: int = Field(10 * MiB, ge=64 * 1024)
    PROBE_PRESIGN_TTL_SECONDS: int = Field(900, ge=60, le=24 * 3600)
    PROBE_VIDEO_EXTENSIONS: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["mp4", "mov", "m4v", "mkv", "webm", "avi", "ts"]
    )
    PROBE_PARTIAL_EXTENSIONS: Annotated[List[str], NoDecode] = Field(default_factory=lambda: ["mp4", "mov", "m4v"])

    # ── Stuck work recovery ───────────────────────────────────
    # Unacked entries idle this long are claimed by another worker.
    WORKER_CLAIM_IDLE_SECONDS: int = Field(900, ge=1)
    WORKER_CLAIM_INTERVAL_SECONDS: int = Field(60, ge=1)
    # PROCESSING rows untouched this long are failed by the stale sweep.
    MEDIA_PROCESSING_TTL_HOURS: int = Field(6, ge=1)

    # ── Validators / normalizers ──────────────────────────────
    @field_validator("PROBE_VIDEO_EXTENSIONS", "PROBE_PARTIAL_EXTENSIONS", mode="before")
    @classmethod
    def _assemble_extensions(cls, v: str | List[str]):
        if isinstance(v, str):
            v = _split_csv(v)
        return [str(e).lower().lstrip(".") for e in v]

    @field_validator("UPLOAD_MIN_PART_BYTES")
    @classmethod
    def _min_part_fits_max(cls, v: int, info) -> int:
        max_bytes = info.data.get("UPLOAD_MAX_BYTES")
        if max_bytes is not None and v > max_bytes:
            raise ValueError("UPLOAD_MIN_PART_BYTES cannot exceed UPLOAD_MAX_BYTES")
        return v

    @field_validator("WORKER_CLAIM_IDLE_SECONDS")
    @classmethod
    def _claim_outlasts_probe(cls, v: int, info) -> int:
        # the probe chain runs up to three strategies, each bounded by the timeout
        timeout = info.data.get("PROBE_TIMEOUT_SECONDS")
        if timeout is not None and v <= 3 * timeout:
            raise ValueError("WORKER_CLAIM_IDLE_SECONDS must exceed three probe timeouts")
        return v

    # ── Derived / convenience properties ─────────────────────
    @property
    def DATABASE_URL(self) -> str:
        """Sync DSN."""
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD.get_secret_value()}"
            f"@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def ASYNC_DATABASE_URL(self) -> str:
        """Async SQLAlchemy DSN (override wins)."""
        if self.DATABASE_URL_OVERRIDE:
            return self.DATABASE_URL_OVERRIDE
        return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")


# Singleton instance
settings = Settings()
