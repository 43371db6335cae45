"""Create campaign jobs queue table.

Revision ID: 20261016_campaign_jobs
Revises:
Create Date: 2026-10-16 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa

revision = "20261016_campaign_jobs"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "campaign_jobs",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("state", sa.String(length=16), nullable=False, server_default="waiting"),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("progress", sa.JSON(), nullable=True),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("failed_reason", sa.Text(), nullable=True),
        sa.Column("parent_job_id", sa.String(length=64), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lock_owner", sa.String(length=64), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index(
        "ix_campaign_jobs_parent_job_id",
        "campaign_jobs",
        ["parent_job_id"],
    )
    op.create_index(
        "ix_campaign_jobs_state_created_at",
        "campaign_jobs",
        ["state", "created_at"],
    )
    op.create_index(
        "ix_campaign_jobs_state_finished_at",
        "campaign_jobs",
        ["state", "finished_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_campaign_jobs_state_finished_at", table_name="campaign_jobs")
    op.drop_index("ix_campaign_jobs_state_created_at", table_name="campaign_jobs")
    op.drop_index("ix_campaign_jobs_parent_job_id", table_name="campaign_jobs")
    op.drop_table("campaign_jobs")
