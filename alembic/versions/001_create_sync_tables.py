"""Create principal, token, record, checkpoint, job and lock tables.

Revision ID: 001_create_sync_tables
Revises:
Create Date: 2026-09-02

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID

# revision identifiers, used by Alembic.
revision: str = "001_create_sync_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    # ==========================================================================
    # Principals and their provider tokens
    # ==========================================================================
    op.create_table(
        "principal",
        sa.Column("id", sa.String(100), primary_key=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("gmail_last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("hubspot_last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "historical_email_sync_completed",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        *_timestamps(),
    )

    op.create_table(
        "principal_oauth_token",
        sa.Column(
            "principal_id",
            sa.String(100),
            sa.ForeignKey("principal.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("provider", sa.String(20), primary_key=True),
        sa.Column("access_token_encrypted", sa.LargeBinary(), nullable=True),
        sa.Column("refresh_token_encrypted", sa.LargeBinary(), nullable=True),
        sa.Column("token_type", sa.String(20), nullable=False, server_default="Bearer"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("connected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_refreshed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reauth_required_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scopes", ARRAY(sa.String), nullable=False, server_default="{}"),
        *_timestamps(),
    )
    op.create_index("idx_oauth_token_provider", "principal_oauth_token", ["provider"])

    # ==========================================================================
    # Synced records (also the sourceId -> localId index)
    # ==========================================================================
    op.create_table(
        "synced_record",
        sa.Column("id", UUID(as_uuid=False), primary_key=True),
        sa.Column("principal_id", sa.String(100), nullable=False),
        sa.Column("source_type", sa.String(20), nullable=False),
        sa.Column("source_id", sa.String(255), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("payload", JSONB, nullable=False),
        sa.Column("record_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_modified_at", sa.String(64), nullable=True),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "principal_id", "source_type", "source_id", name="uq_synced_record_source"
        ),
    )
    op.create_index(
        "idx_synced_record_date",
        "synced_record",
        ["principal_id", "source_type", "record_date"],
    )

    # ==========================================================================
    # Sync checkpoints
    # ==========================================================================
    op.create_table(
        "sync_checkpoint",
        sa.Column("principal_id", sa.String(100), primary_key=True),
        sa.Column("source_type", sa.String(20), primary_key=True),
        sa.Column("mode", sa.String(20), primary_key=True),
        sa.Column("cursor_token", sa.Text(), nullable=True),
        sa.Column("oldest_seen_marker", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_synced", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("since", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    # ==========================================================================
    # Job queue
    # ==========================================================================
    op.create_table(
        "sync_job",
        sa.Column("id", UUID(as_uuid=False), primary_key=True),
        sa.Column("job_type", sa.String(64), nullable=False),
        sa.Column("principal_id", sa.String(100), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="queued"),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("unique_key", sa.String(255), nullable=True),
        sa.Column("payload", JSONB, nullable=False, server_default="{}"),
        sa.Column("result", JSONB, nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("locked_by", sa.String(100), nullable=True),
        sa.Column("lease_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_sync_job_runnable", "sync_job", ["status", "run_at"])
    op.create_index("idx_sync_job_unique", "sync_job", ["unique_key", "status"])
    op.create_index("idx_sync_job_lease", "sync_job", ["status", "lease_until"])

    # ==========================================================================
    # Concurrency locks
    # ==========================================================================
    op.create_table(
        "sync_lock",
        sa.Column("lock_key", sa.String(255), primary_key=True),
        sa.Column("token", sa.String(64), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("sync_lock")
    op.drop_index("idx_sync_job_lease", table_name="sync_job")
    op.drop_index("idx_sync_job_unique", table_name="sync_job")
    op.drop_index("idx_sync_job_runnable", table_name="sync_job")
    op.drop_table("sync_job")
    op.drop_table("sync_checkpoint")
    op.drop_index("idx_synced_record_date", table_name="synced_record")
    op.drop_table("synced_record")
    op.drop_index("idx_oauth_token_provider", table_name="principal_oauth_token")
    op.drop_table("principal_oauth_token")
    op.drop_table("principal")
