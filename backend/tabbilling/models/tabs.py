from __future__ import annotations

import uuid

from ..extensions import db
from tabbilling.time_utils import to_utc_z, utcnow


TAB_STATUS_OPEN = "open"
TAB_STATUS_PARTIAL = "partial"
TAB_STATUS_PAID = "paid"
TAB_STATUS_VOID = "void"
TAB_STATUSES = (TAB_STATUS_OPEN, TAB_STATUS_PARTIAL, TAB_STATUS_PAID, TAB_STATUS_VOID)

PAYMENT_STATUS_SUCCEEDED = "succeeded"
PAYMENT_STATUS_PENDING = "pending"
PAYMENT_STATUS_FAILED = "failed"
PAYMENT_STATUSES = (PAYMENT_STATUS_SUCCEEDED, PAYMENT_STATUS_PENDING, PAYMENT_STATUS_FAILED)


def new_uuid() -> str:
    return str(uuid.uuid4())


class Tab(db.Model):
    """
    An open bill aggregating line items for one customer.

    LIFECYCLE: open|partial|paid -> void -> (restore) -> previous status.
    Void/restore provenance lives in meta["void"] (see voiding_service.VoidRecord);
    earlier cycles are kept in meta["void_history"].
    """
    __tablename__ = "tabs"
    __table_args__ = (
        db.Index("ix_tabs_org_status", "org_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    org_id = db.Column(db.String(64), nullable=False, index=True)

    external_reference = db.Column(db.String(128), nullable=True)
    customer_name = db.Column(db.String(255), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)
    currency = db.Column(db.String(3), nullable=False, default="USD")

    # Amounts in cents
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    paid_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default=TAB_STATUS_OPEN, index=True)

    # "metadata" is reserved on declarative models
    meta = db.Column("metadata", db.JSON, nullable=False, default=dict)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    line_items = db.relationship(
        "LineItem",
        back_populates="tab",
        order_by="LineItem.position",
        lazy=True,
    )
    billing_groups = db.relationship(
        "BillingGroup",
        back_populates="tab",
        order_by="BillingGroup.created_at",
        lazy=True,
    )
    payments = db.relationship("Payment", back_populates="tab", lazy=True)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "external_reference": self.external_reference,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "currency": self.currency,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "paid_amount_cents": self.paid_amount_cents,
            "status": self.status,
            "metadata": self.meta or {},
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class LineItem(db.Model):
    """One charge row on a tab. billing_group_id is NULL for unassigned items."""
    __tablename__ = "line_items"
    __table_args__ = (
        db.UniqueConstraint("tab_id", "position", name="uq_line_items_tab_position"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    tab_id = db.Column(db.String(36), db.ForeignKey("tabs.id"), nullable=False, index=True)
    billing_group_id = db.Column(db.String(36), db.ForeignKey("billing_groups.id"), nullable=True, index=True)

    # 1-based order in which the item was added to the tab
    position = db.Column(db.Integer, nullable=False)

    description = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    total_cents = db.Column(db.Integer, nullable=False)
    category = db.Column(db.String(64), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    tab = db.relationship("Tab", back_populates="line_items")
    billing_group = db.relationship("BillingGroup", back_populates="line_items")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tab_id": self.tab_id,
            "billing_group_id": self.billing_group_id,
            "position": self.position,
            "description": self.description,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "total_cents": self.total_cents,
            "category": self.category,
            "created_at": to_utc_z(self.created_at),
        }


class Payment(db.Model):
    """
    A settled or attempted charge against a tab.

    Capture and refund happen in the payment gateway; this table only mirrors
    the outcome. Any succeeded payment blocks unconditional voiding.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.Index("ix_payments_tab_status", "tab_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    tab_id = db.Column(db.String(36), db.ForeignKey("tabs.id"), nullable=False, index=True)
    billing_group_id = db.Column(db.String(36), db.ForeignKey("billing_groups.id"), nullable=True, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=PAYMENT_STATUS_PENDING, index=True)
    processor = db.Column(db.String(32), nullable=True)
    processor_payment_id = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=db.func.now())

    tab = db.relationship("Tab", back_populates="payments")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tab_id": self.tab_id,
            "billing_group_id": self.billing_group_id,
            "amount_cents": self.amount_cents,
            "status": self.status,
            "processor": self.processor,
            "processor_payment_id": self.processor_payment_id,
            "created_at": to_utc_z(self.created_at),
        }
