"""create scheduled reports, run history and custom report templates

Revision ID: 202610170003
Revises: 202610170002
Create Date: 2026-10-17 00:03:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610170003"
down_revision: str | None = "202610170002"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "scheduled_reports",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("saved_report_id", sa.Uuid(), nullable=False),
        sa.Column("owner_user_id", sa.String(length=128), nullable=False),
        sa.Column("owner_roles", sa.JSON(), nullable=False),
        sa.Column("data_scope", sa.JSON(), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("recipients", sa.JSON(), nullable=False),
        sa.Column("format", sa.String(length=8), nullable=False, server_default="csv"),
        sa.Column("frequency", sa.String(length=16), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="UTC"),
        sa.Column("hour", sa.Integer(), nullable=False, server_default="9"),
        sa.Column("minute", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("day_of_week", sa.Integer(), nullable=True),
        sa.Column("day_of_month", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["saved_report_id"], ["saved_reports.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_scheduled_reports_owner_user_id", "scheduled_reports", ["owner_user_id"], unique=False)
    op.create_index("ix_scheduled_reports_due", "scheduled_reports", ["is_active", "next_run_at"], unique=False)

    op.create_table(
        "scheduled_report_runs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("scheduled_report_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="running"),
        sa.Column("trigger", sa.String(length=16), nullable=False, server_default="schedule"),
        sa.Column("recipients", sa.JSON(), nullable=False),
        sa.Column("rows_count", sa.Integer(), nullable=True),
        sa.Column("file_format", sa.String(length=8), nullable=True),
        sa.Column("file_name", sa.String(length=255), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["scheduled_report_id"], ["scheduled_reports.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_scheduled_report_runs_schedule",
        "scheduled_report_runs",
        ["scheduled_report_id", "started_at"],
        unique=False,
    )

    op.create_table(
        "report_templates",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("category", sa.String(length=64), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("entity", sa.String(length=64), nullable=False),
        sa.Column("definition", sa.JSON(), nullable=False),
        sa.Column("parameters", sa.JSON(), nullable=False),
        sa.Column("created_by", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_report_templates_category", "report_templates", ["category"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_report_templates_category", table_name="report_templates")
    op.drop_table("report_templates")
    op.drop_index("ix_scheduled_report_runs_schedule", table_name="scheduled_report_runs")
    op.drop_table("scheduled_report_runs")
    op.drop_index("ix_scheduled_reports_due", table_name="scheduled_reports")
    op.drop_index("ix_scheduled_reports_owner_user_id", table_name="scheduled_reports")
    op.drop_table("scheduled_reports")
