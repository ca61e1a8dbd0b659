"""Tab billing core: tabs, line items, billing groups, invoices, payments, audit entries

Revision ID: 20261017_tab_billing_core
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261017_tab_billing_core"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    ]


def upgrade():
    op.create_table(
        "tabs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("external_reference", sa.String(length=128), nullable=True),
        sa.Column("customer_name", sa.String(length=255), nullable=True),
        sa.Column("customer_email", sa.String(length=255), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("subtotal_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tax_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("paid_amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="open"),
        sa.Column("metadata", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tabs_org_id", "tabs", ["org_id"], unique=False)
    op.create_index("ix_tabs_status", "tabs", ["status"], unique=False)
    op.create_index("ix_tabs_org_status", "tabs", ["org_id", "status"], unique=False)

    op.create_table(
        "invoices",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("tab_id", sa.String(length=36), nullable=True),
        sa.Column("invoice_number", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="draft"),
        sa.Column("total_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("paid_amount_cents", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tab_id"], ["tabs.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("invoice_number"),
    )
    op.create_index("ix_invoices_tab_id", "invoices", ["tab_id"], unique=False)
    op.create_index("ix_invoices_status", "invoices", ["status"], unique=False)

    op.create_table(
        "billing_groups",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("tab_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("group_type", sa.String(length=16), nullable=False, server_default="standard"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("credit_limit_cents", sa.Integer(), nullable=True),
        sa.Column("deposit_amount_cents", sa.Integer(), nullable=True),
        sa.Column("deposit_applied_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payer_email", sa.String(length=255), nullable=True),
        sa.Column("po_number", sa.String(length=64), nullable=True),
        sa.Column("invoice_id", sa.String(length=36), nullable=True),
        *_timestamps(),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["tab_id"], ["tabs.id"]),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("invoice_id"),
    )
    op.create_index("ix_billing_groups_tab_id", "billing_groups", ["tab_id"], unique=False)
    op.create_index("ix_billing_groups_status", "billing_groups", ["status"], unique=False)
    op.create_index("ix_billing_groups_tab_status", "billing_groups", ["tab_id", "status"], unique=False)

    op.create_table(
        "line_items",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("tab_id", sa.String(length=36), nullable=False),
        sa.Column("billing_group_id", sa.String(length=36), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False),
        sa.Column("total_cents", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(length=64), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tab_id"], ["tabs.id"]),
        sa.ForeignKeyConstraint(["billing_group_id"], ["billing_groups.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tab_id", "position", name="uq_line_items_tab_position"),
    )
    op.create_index("ix_line_items_tab_id", "line_items", ["tab_id"], unique=False)
    op.create_index("ix_line_items_billing_group_id", "line_items", ["billing_group_id"], unique=False)
    op.create_index("ix_line_items_category", "line_items", ["category"], unique=False)

    op.create_table(
        "payments",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("tab_id", sa.String(length=36), nullable=False),
        sa.Column("billing_group_id", sa.String(length=36), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("processor", sa.String(length=32), nullable=True),
        sa.Column("processor_payment_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.ForeignKeyConstraint(["tab_id"], ["tabs.id"]),
        sa.ForeignKeyConstraint(["billing_group_id"], ["billing_groups.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payments_tab_id", "payments", ["tab_id"], unique=False)
    op.create_index("ix_payments_billing_group_id", "payments", ["billing_group_id"], unique=False)
    op.create_index("ix_payments_status", "payments", ["status"], unique=False)
    op.create_index("ix_payments_tab_status", "payments", ["tab_id", "status"], unique=False)

    op.create_table(
        "audit_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("action", sa.String(length=16), nullable=False),
        sa.Column("actor_id", sa.String(length=64), nullable=False),
        sa.Column("changes", sa.JSON(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_audit_entries_org_id", "audit_entries", ["org_id"], unique=False)
    op.create_index("ix_audit_entries_entity_type", "audit_entries", ["entity_type"], unique=False)
    op.create_index("ix_audit_entries_action", "audit_entries", ["action"], unique=False)
    op.create_index("ix_audit_entries_actor_id", "audit_entries", ["actor_id"], unique=False)
    op.create_index("ix_audit_entries_occurred_at", "audit_entries", ["occurred_at"], unique=False)
    op.create_index("ix_audit_entries_entity", "audit_entries", ["entity_type", "entity_id"], unique=False)
    op.create_index("ix_audit_entries_org_occurred", "audit_entries", ["org_id", "occurred_at"], unique=False)


def downgrade():
    op.drop_table("audit_entries")
    op.drop_table("payments")
    op.drop_table("line_items")
    op.drop_table("billing_groups")
    op.drop_table("invoices")
    op.drop_table("tabs")
