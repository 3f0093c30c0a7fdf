"""
Record provider-side finalization on upload sessions.

- upload_session.provider_completed_at: set once the multipart upload is stitched.
- upload_session.stitched_size: object size reported by the provider at that point.
"""

from alembic import op
import sqlalchemy as sa

# Revision identifiers, used by Alembic.
revision = "20261019_01_upload_provider_marker"
down_revision = "20260601_01_media_ingest"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("upload_session", sa.Column("provider_completed_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("upload_session", sa.Column("stitched_size", sa.BigInteger(), nullable=True))


def downgrade() -> None:
    op.drop_column("upload_session", "stitched_size")
    op.drop_column("upload_session", "provider_completed_at")
