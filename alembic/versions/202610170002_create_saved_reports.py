"""create saved reports and share grants

Revision ID: 202610170002
Revises: 202610170001
Create Date: 2026-10-17 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610170002"
down_revision: str | None = "202610170001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "saved_reports",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_user_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("entity", sa.String(length=64), nullable=False),
        sa.Column("definition", sa.JSON(), nullable=False),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("sharing_state", sa.String(length=16), nullable=False, server_default="private"),
        sa.Column("public_token", sa.String(length=64), nullable=True),
        sa.Column("public_token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("public_token"),
    )
    op.create_index("ix_saved_reports_owner_user_id", "saved_reports", ["owner_user_id"], unique=False)
    op.create_index("ix_saved_reports_entity", "saved_reports", ["entity"], unique=False)
    op.create_index("ix_saved_reports_deleted_at", "saved_reports", ["deleted_at"], unique=False)

    op.create_table(
        "saved_report_shares",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("saved_report_id", sa.Uuid(), nullable=False),
        sa.Column("grantee_type", sa.String(length=16), nullable=False),
        sa.Column("grantee_id", sa.String(length=128), nullable=False),
        sa.Column("can_edit", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["saved_report_id"], ["saved_reports.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("saved_report_id", "grantee_type", "grantee_id", name="uq_saved_report_shares_grantee"),
    )
    op.create_index(
        "ix_saved_report_shares_grantee",
        "saved_report_shares",
        ["grantee_type", "grantee_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_saved_report_shares_grantee", table_name="saved_report_shares")
    op.drop_table("saved_report_shares")
    op.drop_index("ix_saved_reports_deleted_at", table_name="saved_reports")
    op.drop_index("ix_saved_reports_entity", table_name="saved_reports")
    op.drop_index("ix_saved_reports_owner_user_id", table_name="saved_reports")
    op.drop_table("saved_reports")
