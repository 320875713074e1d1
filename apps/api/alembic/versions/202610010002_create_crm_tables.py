"""create crm leads customers tasks

Revision ID: 202610010002
Revises: 202610010001
Create Date: 2026-10-01 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010002"
down_revision: str | None = "202610010001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_lead",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=20), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="New"),
        sa.Column("source", sa.String(length=50), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("assigned_agent_id", sa.Uuid(), sa.ForeignKey("app_user.id"), nullable=False),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("converted_customer_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_crm_lead_active_email",
        "crm_lead",
        ["email"],
        unique=True,
        postgresql_where=sa.text("is_archived = false"),
        sqlite_where=sa.text("is_archived = 0"),
    )
    op.create_index(
        "ix_crm_lead_agent_status",
        "crm_lead",
        ["assigned_agent_id", "status", "created_at"],
        unique=False,
    )

    op.create_table(
        "crm_customer",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=20), nullable=True),
        sa.Column("company", sa.String(length=100), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="Active"),
        sa.Column("owner_id", sa.Uuid(), sa.ForeignKey("app_user.id"), nullable=False),
        sa.Column("agent_id", sa.Uuid(), sa.ForeignKey("app_user.id"), nullable=True),
        sa.Column("converted_from_lead_id", sa.Uuid(), sa.ForeignKey("crm_lead.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", name="uq_crm_customer_email"),
    )

    op.create_table(
        "crm_customer_note",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "customer_id",
            sa.Uuid(),
            sa.ForeignKey("crm_customer.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_by_id", sa.Uuid(), sa.ForeignKey("app_user.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_crm_customer_note_customer_id", "crm_customer_note", ["customer_id"], unique=False)

    op.create_table(
        "crm_task",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="Open"),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="Medium"),
        sa.Column("related_to", sa.String(length=16), nullable=False),
        sa.Column("related_id", sa.String(length=64), nullable=False),
        sa.Column("owner_id", sa.Uuid(), sa.ForeignKey("app_user.id"), nullable=False),
        sa.Column("assigned_to_id", sa.Uuid(), sa.ForeignKey("app_user.id"), nullable=False),
        sa.Column("agent_id", sa.Uuid(), sa.ForeignKey("app_user.id"), nullable=True),
        sa.Column("created_by_id", sa.Uuid(), sa.ForeignKey("app_user.id"), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_task_assignee_status_due",
        "crm_task",
        ["assigned_to_id", "status", "due_date"],
        unique=False,
    )
    op.create_index("ix_crm_task_related", "crm_task", ["related_to", "related_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_crm_task_related", table_name="crm_task")
    op.drop_index("ix_crm_task_assignee_status_due", table_name="crm_task")
    op.drop_table("crm_task")
    op.drop_index("ix_crm_customer_note_customer_id", table_name="crm_customer_note")
    op.drop_table("crm_customer_note")
    op.drop_table("crm_customer")
    op.drop_index("ix_crm_lead_agent_status", table_name="crm_lead")
    op.drop_index("uq_crm_lead_active_email", table_name="crm_lead")
    op.drop_table("crm_lead")
