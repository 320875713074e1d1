"""create crm activity log

Revision ID: 202610010003
Revises: 202610010002
Create Date: 2026-10-01 00:03:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010003"
down_revision: str | None = "202610010002"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_activity_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity_type", sa.String(length=16), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("performed_by_id", sa.Uuid(), sa.ForeignKey("app_user.id"), nullable=False),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=255), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_activity_log_entity", "crm_activity_log", ["entity_type", "entity_id"], unique=False)
    op.create_index(
        "ix_crm_activity_log_performed_by_created",
        "crm_activity_log",
        ["performed_by_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_crm_activity_log_performed_by_created", table_name="crm_activity_log")
    op.drop_index("ix_crm_activity_log_entity", table_name="crm_activity_log")
    op.drop_table("crm_activity_log")
