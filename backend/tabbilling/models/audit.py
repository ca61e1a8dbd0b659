from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from tabbilling.time_utils import to_utc_z, utcnow


ENTITY_TAB = "tab"
ENTITY_BILLING_GROUP = "billing_group"
ENTITY_LINE_ITEM = "line_item"
ENTITY_INVOICE = "invoice"
ENTITY_BILLING_GROUP_RULE = "billing_group_rule"
ENTITY_TYPES = (ENTITY_TAB, ENTITY_BILLING_GROUP, ENTITY_LINE_ITEM, ENTITY_INVOICE, ENTITY_BILLING_GROUP_RULE)

ACTION_CREATED = "created"
ACTION_UPDATED = "updated"
ACTION_DELETED = "deleted"
ACTION_ASSIGNED = "assigned"
ACTION_VOIDED = "voided"
ACTION_RESTORED = "restored"
AUDIT_ACTIONS = (
    ACTION_CREATED,
    ACTION_UPDATED,
    ACTION_DELETED,
    ACTION_ASSIGNED,
    ACTION_VOIDED,
    ACTION_RESTORED,
)


class AuditEntry(db.Model):
    """
    Append-only record of one state-changing action.

    IMMUTABLE: never updated or deleted; the ORM refuses both (see listeners below).
    changes: {field: {"from": old, "to": new}}
    meta: free-form context (reason, warnings, forced bypass, invoice actions)
    """
    __tablename__ = "audit_entries"
    __table_args__ = (
        db.Index("ix_audit_entries_entity", "entity_type", "entity_id"),
        db.Index("ix_audit_entries_org_occurred", "org_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.String(64), nullable=False, index=True)

    entity_type = db.Column(db.String(32), nullable=False, index=True)
    entity_id = db.Column(db.String(64), nullable=False)
    action = db.Column(db.String(16), nullable=False, index=True)
    actor_id = db.Column(db.String(64), nullable=False, index=True)

    changes = db.Column(db.JSON, nullable=False, default=dict)
    meta = db.Column("metadata", db.JSON, nullable=False, default=dict)

    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_id": self.actor_id,
            "changes": self.changes or {},
            "metadata": self.meta or {},
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "occurred_at": to_utc_z(self.occurred_at),
        }


@event.listens_for(AuditEntry, "before_update")
def _refuse_audit_update(mapper, connection, target):
    raise ValueError(f"AuditEntry {target.id} is immutable")


@event.listens_for(AuditEntry, "before_delete")
def _refuse_audit_delete(mapper, connection, target):
    raise ValueError(f"AuditEntry {target.id} cannot be deleted")
