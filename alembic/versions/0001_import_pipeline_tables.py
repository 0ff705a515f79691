"""create import pipeline tables

Revision ID: 0001_import_pipeline
Revises:
Create Date: 2025-06-02 10:12:41.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001_import_pipeline"
down_revision: str | None = None
branch_labels: str | (Sequence[str] | None) = None
depends_on: str | (Sequence[str] | None) = None

JOB_STATUSES = ("PENDING", "ANALYZING", "READY", "RUNNING", "COMPLETED", "FAILED", "CANCELED")
JOB_PHASES = ("UPLOADING", "ANALYZING", "CONFIGURING", "IMPORTING", "FINALIZING")


def upgrade() -> None:
    op.create_table(
        "import_jobs",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("status", sa.Enum(*JOB_STATUSES, name="jobstatus"), nullable=False),
        sa.Column("phase", sa.Enum(*JOB_PHASES, name="jobphase"), nullable=True),
        sa.Column("storage_key", sa.Text(), nullable=False),
        sa.Column("original_file_name", sa.String(255), nullable=True),
        sa.Column("original_file_size", sa.BigInteger(), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_datasets", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_rows", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("processed_datasets", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed_rows", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("current_entity", sa.String(100), nullable=True),
        sa.Column("status_message", sa.Text(), nullable=True),
        sa.Column("estimated_time_remaining", sa.String(50), nullable=True),
        sa.Column("processing_rate", sa.String(50), nullable=True),
        sa.Column("activity_log", sa.JSON(), nullable=True),
        sa.Column("entity_progress", sa.JSON(), nullable=True),
        sa.Column("configuration", sa.JSON(), nullable=True),
        sa.Column("analysis", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_by_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("analysis_generated_at", sa.DateTime(), nullable=True),
        sa.Column("last_import_started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("canceled_at", sa.DateTime(), nullable=True),
        sa.Column("duration_ms", sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_import_jobs_status", "import_jobs", ["status"])

    op.create_table(
        "import_datasets",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("job_id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("row_count", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("sample_row_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("truncated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("schema", sa.JSON(), nullable=True),
        sa.Column("sample_rows", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["import_jobs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id", "name", name="uq_import_dataset_job_name"),
    )

    op.create_table(
        "import_staging",
        sa.Column("job_id", sa.String(36), nullable=False),
        sa.Column("dataset_name", sa.String(255), nullable=False),
        sa.Column("row_index", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("row_data", sa.JSON(), nullable=False),
        sa.Column("field_name", sa.Text(), nullable=True),
        sa.Column("field_value", sa.Text(), nullable=True),
        sa.Column("text1", sa.Text(), nullable=True),
        sa.Column("text2", sa.Text(), nullable=True),
        sa.Column("text3", sa.Text(), nullable=True),
        sa.Column("text4", sa.Text(), nullable=True),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint("job_id", "dataset_name", "row_index"),
    )
    op.create_index("idx_staging_job_dataset", "import_staging", ["job_id", "dataset_name"])


def downgrade() -> None:
    op.drop_index("idx_staging_job_dataset", table_name="import_staging")
    op.drop_table("import_staging")
    op.drop_table("import_datasets")
    op.drop_index("ix_import_jobs_status", table_name="import_jobs")
    op.drop_table("import_jobs")
    sa.Enum(name="jobphase").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="jobstatus").drop(op.get_bind(), checkfirst=True)
