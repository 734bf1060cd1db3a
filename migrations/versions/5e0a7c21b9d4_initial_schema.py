"""Initial schema for the contact sync service.

Revision ID: 5e0a7c21b9d4
Revises: None
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "5e0a7c21b9d4"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "sync_runs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("sync_type", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("phase", sa.String(length=30), server_default="claiming", nullable=False),
        sa.Column(
            "started_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_expected", sa.Integer(), nullable=True),
        sa.Column("fetched_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("created_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("updated_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("error_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("failed_id_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("fetch_passes", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_processed_id", sa.String(length=64), nullable=True),
        sa.Column("resumed_from_run_id", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_by", sa.String(length=255), nullable=True),
        sa.Column("cancelled_by", sa.String(length=255), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        if_not_exists=True,
    )

    op.create_index("ix_sync_runs_sync_type", "sync_runs", ["sync_type"], if_not_exists=True)
    op.create_index(
        "idx_sync_runs_type_started",
        "sync_runs",
        ["sync_type", "started_at"],
        if_not_exists=True,
    )
    # At most one running sync per type; concurrent claims fail on this index
    op.create_index(
        "uq_sync_runs_one_running",
        "sync_runs",
        ["sync_type"],
        unique=True,
        postgresql_where=sa.text("status = 'running'"),
        if_not_exists=True,
    )

    op.create_table(
        "candidates",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("external_id", sa.String(length=64), nullable=False),
        sa.Column("first_name", sa.String(length=255), nullable=False),
        sa.Column("last_name", sa.String(length=255), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=50), nullable=True),
        sa.Column("job_title", sa.String(length=255), nullable=True),
        sa.Column("title_description", sa.Text(), nullable=True),
        sa.Column("profile_summary", sa.Text(), nullable=True),
        sa.Column("company", sa.String(length=255), nullable=True),
        sa.Column("company_location", sa.String(length=255), nullable=True),
        sa.Column("industry", sa.String(length=255), nullable=True),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("linkedin_url", sa.String(length=500), nullable=True),
        sa.Column("status", sa.String(length=50), server_default="not_contacted", nullable=False),
        sa.Column("source", sa.String(length=50), nullable=True),
        sa.Column("remote_modified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        if_not_exists=True,
    )

    op.create_index(
        "ix_candidates_external_id", "candidates", ["external_id"], unique=True, if_not_exists=True
    )
    op.create_index("ix_candidates_email", "candidates", ["email"], if_not_exists=True)
    op.create_index(
        "ix_candidates_last_synced_at", "candidates", ["last_synced_at"], if_not_exists=True
    )


def downgrade() -> None:
    op.drop_index("ix_candidates_last_synced_at", table_name="candidates", if_exists=True)
    op.drop_index("ix_candidates_email", table_name="candidates", if_exists=True)
    op.drop_index("ix_candidates_external_id", table_name="candidates", if_exists=True)
    op.drop_table("candidates", if_exists=True)

    op.drop_index("uq_sync_runs_one_running", table_name="sync_runs", if_exists=True)
    op.drop_index("idx_sync_runs_type_started", table_name="sync_runs", if_exists=True)
    op.drop_index("ix_sync_runs_sync_type", table_name="sync_runs", if_exists=True)
    op.drop_table("sync_runs", if_exists=True)
