"""create crm customer tag

Revision ID: 202610010004
Revises: 202610010003
Create Date: 2026-10-01 00:04:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010004"
down_revision: str | None = "202610010003"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    tag_table = op.create_table(
        "crm_customer_tag",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column(
            "customer_id",
            sa.Uuid(),
            sa.ForeignKey("crm_customer.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("value", sa.String(length=30), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_customer_tag_customer_id", "crm_customer_tag", ["customer_id"], unique=False)
    op.create_index("ix_crm_customer_tag_value", "crm_customer_tag", ["value"], unique=False)

    customers = sa.table("crm_customer", sa.column("id", sa.Uuid()), sa.column("tags", sa.JSON()))
    rows = [
        {"customer_id": customer_id, "position": index, "value": tag}
        for customer_id, tags in op.get_bind().execute(sa.select(customers.c.id, customers.c.tags))
        for index, tag in enumerate(tags or [])
    ]
    if rows:
        op.bulk_insert(tag_table, rows)


def downgrade() -> None:
    op.drop_index("ix_crm_customer_tag_value", table_name="crm_customer_tag")
    op.drop_index("ix_crm_customer_tag_customer_id", table_name="crm_customer_tag")
    op.drop_table("crm_customer_tag")
