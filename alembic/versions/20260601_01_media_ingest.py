"""
Media ingest schema.

- upload_session / chunk_upload_status for multipart uploads.
- media_file with the partial unique checksum index used for dedup.
- outbox_event for reliable event publication.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic.
revision = "20260601_01_media_ingest"
down_revision = None
branch_labels = None
depends_on = None

_LIVE_CHECKSUM_WHERE = sa.text("status IN ('COMPLETED', 'INITIATED', 'PROCESSING', 'UPLOADED', 'VALIDATED')")


def upgrade() -> None:
    upload_purpose = postgresql.ENUM(
        "MOVIE_SOURCE", "MOVIE_TRAILER", "MOVIE_POSTER", "USER_AVATAR", name="upload_purpose", create_type=False
    )
    chunk_status = postgresql.ENUM("PENDING", "UPLOADED", "FAILED", name="chunk_status", create_type=False)
    storage_provider = postgresql.ENUM("S3", name="storage_provider", create_type=False)
    media_status = postgresql.ENUM(
        "INITIATED", "UPLOADED", "VALIDATED", "PROCESSING", "COMPLETED", "REJECTED",
        "MALWARE_DETECTED", "INVALID_FILE", "FAILED", "EXPIRED", "DELETED",
        name="media_status", create_type=False,
    )
    outbox_status = postgresql.ENUM("PENDING", "SENT", "FAILED", name="outbox_status", create_type=False)

    bind = op.get_bind()
    for enum in (upload_purpose, chunk_status, storage_provider, media_status, outbox_status):
        enum.create(bind, checkfirst=True)

    # --- upload_session ---
    op.create_table(
        "upload_session",
        sa.Column("upload_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("purpose", upload_purpose, nullable=False),
        sa.Column("bucket", sa.String(length=255), nullable=False),
        sa.Column("object_key", sa.String(length=1024), nullable=False),
        sa.Column("content_type", sa.String(length=127), nullable=False),
        sa.Column("original_filename", sa.String(length=512), nullable=True),
        sa.Column("provider_upload_id", sa.String(length=1024), nullable=False),
        sa.Column("expected_size", sa.BigInteger(), nullable=False),
        sa.Column("part_size", sa.BigInteger(), nullable=False),
        sa.Column("part_count", sa.Integer(), nullable=False),
        sa.Column("checksum", sa.String(length=64), nullable=True),
        sa.Column("sparse_checksum", sa.String(length=64), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("media_file_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("upload_id", name="pk_upload_session"),
        sa.UniqueConstraint("object_key", name="uq_upload_session_object_key"),
        sa.CheckConstraint("expected_size > 0", name="ck_upload_session_expected_size_positive"),
        sa.CheckConstraint("part_size > 0", name="ck_upload_session_part_size_positive"),
        sa.CheckConstraint("part_count >= 1", name="ck_upload_session_part_count_positive"),
    )
    op.create_index("ix_upload_session_user_id", "upload_session", ["user_id"])
    op.create_index("ix_upload_session_sparse_checksum", "upload_session", ["sparse_checksum"])
    op.create_index("ix_upload_session_media_file_id", "upload_session", ["media_file_id"])
    op.create_index("ix_upload_session_open_expiry", "upload_session", ["completed", "expires_at"])

    # --- chunk_upload_status ---
    op.create_table(
        "chunk_upload_status",
        sa.Column("upload_id", sa.String(length=64), nullable=False),
        sa.Column("part_number", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("status", chunk_status, nullable=False, server_default="PENDING"),
        sa.Column("etag", sa.String(length=255), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.String(length=512), nullable=True),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["upload_id"], ["upload_session.upload_id"],
            name="fk_chunk_upload_status_upload_id_upload_session", ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("upload_id", "part_number", name="pk_chunk_upload_status"),
        sa.CheckConstraint("part_number >= 1", name="ck_chunk_upload_status_part_number_positive"),
        sa.CheckConstraint("retry_count >= 0", name="ck_chunk_upload_status_retry_count_nonneg"),
    )
    op.create_index("ix_chunk_upload_status_upload_status", "chunk_upload_status", ["upload_id", "status"])

    # --- media_file ---
    op.create_table(
        "media_file",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("upload_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("purpose", upload_purpose, nullable=False),
        sa.Column("storage_provider", storage_provider, nullable=False),
        sa.Column("bucket", sa.String(length=255), nullable=False),
        sa.Column("object_key", sa.String(length=1024), nullable=False),
        sa.Column("original_filename", sa.String(length=512), nullable=True),
        sa.Column("mime_type", sa.String(length=127), nullable=True),
        sa.Column("size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("checksum", sa.String(length=64), nullable=True),
        sa.Column("sparse_checksum", sa.String(length=64), nullable=True),
        sa.Column("status", media_status, nullable=False),
        sa.Column("status_reason", sa.String(length=512), nullable=True),
        sa.Column("probe", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_media_file"),
        sa.UniqueConstraint("upload_id", name="uq_media_file_upload_id"),
        sa.CheckConstraint("(size_bytes IS NULL) OR (size_bytes >= 0)", name="ck_media_file_size_nonneg"),
    )
    op.create_index("ix_media_file_user_id", "media_file", ["user_id"])
    op.create_index("ix_media_file_sparse_checksum", "media_file", ["sparse_checksum"])
    op.create_index("ix_media_file_status", "media_file", ["status"])
    op.create_index("ix_media_file_checksum", "media_file", ["checksum"])
    op.create_index("ix_media_file_status_updated", "media_file", ["status", "updated_at"])
    op.create_index(
        "uq_media_file_live_checksum", "media_file", ["checksum"],
        unique=True, postgresql_where=_LIVE_CHECKSUM_WHERE,
    )

    # --- outbox_event ---
    op.create_table(
        "outbox_event",
        sa.Column("id", sa.BigInteger(), sa.Identity(), nullable=False),
        sa.Column("aggregate_id", sa.String(length=64), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", outbox_status, nullable=False, server_default="PENDING"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_outbox_event"),
        sa.CheckConstraint("retry_count >= 0", name="ck_outbox_event_retry_count_nonneg"),
    )
    op.create_index("ix_outbox_event_aggregate_id", "outbox_event", ["aggregate_id"])
    op.create_index("ix_outbox_event_status_created", "outbox_event", ["status", "created_at"])
    op.create_index("ix_outbox_event_status_sent", "outbox_event", ["status", "sent_at"])


def downgrade() -> None:
    op.drop_table("outbox_event")
    op.drop_index("uq_media_file_live_checksum", table_name="media_file")
    op.drop_table("media_file")
    op.drop_table("chunk_upload_status")
    op.drop_table("upload_session")

    bind = op.get_bind()
    for name in ("outbox_status", "media_status", "storage_provider", "chunk_status", "upload_purpose"):
        sa.Enum(name=name).drop(bind, checkfirst=True)
