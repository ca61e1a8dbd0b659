from __future__ import annotations

from ..extensions import db
from tabbilling.time_utils import to_utc_z, utcnow
from .tabs import new_uuid


GROUP_TYPE_STANDARD = "standard"
GROUP_TYPE_CORPORATE = "corporate"
GROUP_TYPE_DEPOSIT = "deposit"
GROUP_TYPE_CREDIT = "credit"
GROUP_TYPES = (GROUP_TYPE_STANDARD, GROUP_TYPE_CORPORATE, GROUP_TYPE_DEPOSIT, GROUP_TYPE_CREDIT)

GROUP_STATUS_ACTIVE = "active"
GROUP_STATUS_CLOSED = "closed"
GROUP_STATUS_SUSPENDED = "suspended"
GROUP_STATUSES = (GROUP_STATUS_ACTIVE, GROUP_STATUS_CLOSED, GROUP_STATUS_SUSPENDED)

INVOICE_STATUS_DRAFT = "draft"
INVOICE_STATUS_SENT = "sent"
INVOICE_STATUS_PAID = "paid"
INVOICE_STATUS_VOID = "void"
INVOICE_STATUSES = (INVOICE_STATUS_DRAFT, INVOICE_STATUS_SENT, INVOICE_STATUS_PAID, INVOICE_STATUS_VOID)

RULE_ACTION_AUTO_ASSIGN = "auto_assign"
RULE_ACTION_REQUIRE_APPROVAL = "require_approval"
RULE_ACTION_NOTIFY = "notify"
RULE_ACTION_REJECT = "reject"
RULE_ACTIONS = (RULE_ACTION_AUTO_ASSIGN, RULE_ACTION_REQUIRE_APPROVAL, RULE_ACTION_NOTIFY, RULE_ACTION_REJECT)

RULE_PRIORITY_DEFAULT = 100


class BillingGroup(db.Model):
    """
    A payer/arrangement bucket for a subset of a tab's line items.

    INVARIANTS:
    - Belongs to exactly one tab.
    - Its line items are disjoint from every other group's (enforced by the
      single billing_group_id column on line_items).
    - credit groups carry a credit limit, deposit groups a deposit amount.
    """
    __tablename__ = "billing_groups"
    __table_args__ = (
        db.Index("ix_billing_groups_tab_status", "tab_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    tab_id = db.Column(db.String(36), db.ForeignKey("tabs.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    group_type = db.Column(db.String(16), nullable=False, default=GROUP_TYPE_STANDARD)
    status = db.Column(db.String(16), nullable=False, default=GROUP_STATUS_ACTIVE, index=True)

    # Financial constraints (cents). Tracked, surfaced, not enforced here.
    credit_limit_cents = db.Column(db.Integer, nullable=True)
    deposit_amount_cents = db.Column(db.Integer, nullable=True)
    deposit_applied_cents = db.Column(db.Integer, nullable=False, default=0)

    payer_email = db.Column(db.String(255), nullable=True)
    po_number = db.Column(db.String(64), nullable=True)

    invoice_id = db.Column(db.String(36), db.ForeignKey("invoices.id"), nullable=True, unique=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    tab = db.relationship("Tab", back_populates="billing_groups")
    line_items = db.relationship(
        "LineItem",
        back_populates="billing_group",
        order_by="LineItem.position",
        lazy=True,
    )
    invoice = db.relationship("Invoice", back_populates="billing_group", uselist=False)
    rules = db.relationship(
        "BillingGroupRule",
        back_populates="billing_group",
        order_by="BillingGroupRule.priority",
        cascade="all, delete-orphan",
        lazy=True,
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def deposit_remaining_cents(self) -> int:
        if self.deposit_amount_cents is None:
            return 0
        return self.deposit_amount_cents - (self.deposit_applied_cents or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tab_id": self.tab_id,
            "name": self.name,
            "group_type": self.group_type,
            "status": self.status,
            "credit_limit_cents": self.credit_limit_cents,
            "deposit_amount_cents": self.deposit_amount_cents,
            "deposit_applied_cents": self.deposit_applied_cents,
            "payer_email": self.payer_email,
            "po_number": self.po_number,
            "invoice_id": self.invoice_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Invoice(db.Model):
    """Financial document attached 1:1 to a billing group."""
    __tablename__ = "invoices"

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    tab_id = db.Column(db.String(36), db.ForeignKey("tabs.id"), nullable=True, index=True)

    invoice_number = db.Column(db.String(64), nullable=False, unique=True)
    status = db.Column(db.String(16), nullable=False, default=INVOICE_STATUS_DRAFT, index=True)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    paid_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    billing_group = db.relationship("BillingGroup", back_populates="invoice", uselist=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tab_id": self.tab_id,
            "invoice_number": self.invoice_number,
            "status": self.status,
            "total_cents": self.total_cents,
            "paid_amount_cents": self.paid_amount_cents,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class BillingGroupRule(db.Model):
    """
    Auto-assignment rule owned by a billing group.

    Rules across a tab's groups are evaluated in ascending priority (lower
    number first); the first active rule whose conditions all match decides.

    conditions: {"categories": [...], "amount": {"min_cents", "max_cents"},
                 "time": {"start": "HH:MM", "end": "HH:MM"}, "days_of_week": [0..6]}
    """
    __tablename__ = "billing_group_rules"
    __table_args__ = (
        db.Index("ix_billing_group_rules_group_priority", "billing_group_id", "priority"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    billing_group_id = db.Column(db.String(36), db.ForeignKey("billing_groups.id"), nullable=False, index=True)

    name = db.Column(db.String(100), nullable=False)
    priority = db.Column(db.Integer, nullable=False, default=RULE_PRIORITY_DEFAULT)
    conditions = db.Column(db.JSON, nullable=False, default=dict)
    action = db.Column(db.String(32), nullable=False, default=RULE_ACTION_AUTO_ASSIGN)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    billing_group = db.relationship("BillingGroup", back_populates="rules")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "billing_group_id": self.billing_group_id,
            "name": self.name,
            "priority": self.priority,
            "conditions": self.conditions or {},
            "action": self.action,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
