"""Billing group rules for priority-ordered auto-assignment of line items

Revision ID: 20261017_billing_group_rules
Revises: 20261017_tab_billing_core
Create Date: 2026-10-17 15:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261017_billing_group_rules"
down_revision = "20261017_tab_billing_core"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "billing_group_rules",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("billing_group_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("conditions", sa.JSON(), nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False, server_default="auto_assign"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.ForeignKeyConstraint(["billing_group_id"], ["billing_groups.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_billing_group_rules_billing_group_id", "billing_group_rules", ["billing_group_id"], unique=False)
    op.create_index(
        "ix_billing_group_rules_group_priority", "billing_group_rules", ["billing_group_id", "priority"], unique=False
    )


def downgrade():
    op.drop_index("ix_billing_group_rules_group_priority", table_name="billing_group_rules")
    op.drop_index("ix_billing_group_rules_billing_group_id", table_name="billing_group_rules")
    op.drop_table("billing_group_rules")
