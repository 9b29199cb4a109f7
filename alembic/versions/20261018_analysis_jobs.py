"""create analysis_jobs queue table

Revision ID: 20261018_analysis_jobs
Revises:
Create Date: 2026-10-18 09:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "20261018_analysis_jobs"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "analysis_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("entry_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("relationship_id", sa.String(length=64), nullable=True),
        sa.Column("user_tier", sa.String(length=16), nullable=True),
        sa.Column("request_key", sa.String(length=128), nullable=False),
        sa.Column("dedupe_key", sa.String(length=128), nullable=True),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="normal"),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="queued"),
        sa.Column("queued_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.Column("priority_changed_at", sa.DateTime(), nullable=True),
        sa.Column("processing_started_at", sa.DateTime(), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("processing_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_history", sa.JSON(), nullable=False, server_default=sa.text("'[]'::json")),
        sa.Column("priority_history", sa.JSON(), nullable=False, server_default=sa.text("'[]'::json")),
        sa.Column("last_error_type", sa.String(length=24), nullable=True),
        sa.Column("last_error_message", sa.Text(), nullable=True),
        sa.Column("dead_letter_queue", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("dead_letter_reason", sa.Text(), nullable=True),
        sa.Column("dead_letter_category", sa.String(length=32), nullable=True),
        sa.Column("dead_letter_timestamp", sa.DateTime(), nullable=True),
        sa.Column("dead_letter_metadata", sa.JSON(), nullable=True),
        sa.Column("queue_position", sa.Integer(), nullable=True),
        sa.Column("estimated_completion_time", sa.DateTime(), nullable=True),
        sa.Column("queue_wait_time_ms", sa.Integer(), nullable=True),
        sa.Column("total_processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("result_json", sa.JSON(), nullable=True),
        sa.Column("requeued_from_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("requeued_to_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("dedupe_key", name="uq_analysis_jobs_dedupe_key"),
    )
    op.create_index("ix_analysis_jobs_user_id", "analysis_jobs", ["user_id"], unique=False)
    op.create_index("ix_analysis_jobs_requeued_from_id", "analysis_jobs", ["requeued_from_id"], unique=False)
    op.create_index("ix_analysis_jobs_status", "analysis_jobs", ["status"], unique=False)
    op.create_index("ix_analysis_jobs_priority_queued", "analysis_jobs", ["priority", "queued_at"], unique=False)
    op.create_index("ix_analysis_jobs_status_priority", "analysis_jobs", ["status", "priority"], unique=False)
    op.create_index("ix_analysis_jobs_entry", "analysis_jobs", ["entry_id"], unique=False)
    op.create_index(
        "ix_analysis_jobs_status_dead_letter", "analysis_jobs", ["status", "dead_letter_timestamp"], unique=False
    )


def downgrade() -> None:
    op.drop_index("ix_analysis_jobs_status_dead_letter", table_name="analysis_jobs")
    op.drop_index("ix_analysis_jobs_entry", table_name="analysis_jobs")
    op.drop_index("ix_analysis_jobs_status_priority", table_name="analysis_jobs")
    op.drop_index("ix_analysis_jobs_priority_queued", table_name="analysis_jobs")
    op.drop_index("ix_analysis_jobs_status", table_name="analysis_jobs")
    op.drop_index("ix_analysis_jobs_requeued_from_id", table_name="analysis_jobs")
    op.drop_index("ix_analysis_jobs_user_id", table_name="analysis_jobs")
    op.drop_table("analysis_jobs")
