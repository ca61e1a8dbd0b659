# Overview: Service-layer operations for billing groups; split persistence, manual assignment and guarded deletion.

"""
Billing Group Lifecycle Service

================================================================================
PURPOSE: Own every write to billing groups and to line item -> group assignment
================================================================================

DELETION SAFETY:
    validate_deletion() is a read-only check returning blockers + warnings.
    delete_billing_group() re-runs the same check after locking the group and
    refuses (DeletionBlockedError) unless the caller forces AND is privileged.

    Blockers:
        invoice     the group's invoice has money applied to it
        payment     succeeded payments reference the group
        line_items  items still assigned and no migration target given

    Warnings:
        unpaid line items will lose their group association
        a draft invoice with a non-zero total will be deleted

RULES:
1. A line item belongs to at most one group (single FK column).
2. Every mutation writes its audit entries in the same transaction.
3. Deletion writes exactly one 'deleted' entry, whatever else moved.
================================================================================
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from flask import current_app

from ..extensions import db
from ..models import AuditEntry, BillingGroup, Invoice, LineItem, Payment, Tab
from ..models.audit import (
    ACTION_ASSIGNED,
    ACTION_CREATED,
    ACTION_DELETED,
    ACTION_UPDATED,
    ENTITY_BILLING_GROUP,
    ENTITY_LINE_ITEM,
)
from ..models.billing import (
    GROUP_STATUSES,
    GROUP_TYPE_CREDIT,
    GROUP_TYPE_DEPOSIT,
    GROUP_TYPES,
    INVOICE_STATUS_DRAFT,
    INVOICE_STATUS_PAID,
)
from ..models.tabs import PAYMENT_STATUS_SUCCEEDED, TAB_STATUS_VOID
from ..validation import (
    ConflictError,
    ForbiddenError,
    ModelValidationPolicy,
    NotFoundError,
    ValidationError,
    enforce_amount_range,
    validate_payload,
)
from . import audit_service
from .allocation_service import AllocationPlan, SplitStrategy, allocate
from .concurrency import lock_for_update, run_with_retry
from tabbilling.time_utils import format_cents


BLOCKER_INVOICE = "invoice"
BLOCKER_PAYMENT = "payment"
BLOCKER_LINE_ITEMS = "line_items"

WARNING_UNPAID_ITEMS = "unpaid_line_items"
WARNING_DRAFT_INVOICE = "draft_invoice"

GROUP_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={
        "name",
        "group_type",
        "credit_limit_cents",
        "deposit_amount_cents",
        "payer_email",
        "po_number",
    },
    required_on_create={"name"},
)

GROUP_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields={
        "name",
        "status",
        "credit_limit_cents",
        "deposit_amount_cents",
        "payer_email",
        "po_number",
    },
)

# Fields diffed into the 'updated' audit entry
AUDITED_GROUP_FIELDS = (
    "name",
    "group_type",
    "status",
    "credit_limit_cents",
    "deposit_amount_cents",
    "payer_email",
    "po_number",
)


class DeletionBlockedError(ConflictError):
    """Deletion refused by the safety check; carries the check for the 409 body."""

    def __init__(self, check: "DeletionCheck"):
        super().__init__("Billing group cannot be deleted", check.to_dict())
        self.check = check


@dataclass
class Finding:
    """One blocker or warning: a category, a human message and structured detail."""
    category: str
    message: str
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": self.category, "message": self.message, "details": self.details}


@dataclass
class DeletionCheck:
    can_delete: bool
    blockers: list[Finding]
    warnings: list[Finding]
    billing_group: dict

    def to_dict(self) -> dict:
        return {
            "can_delete": self.can_delete,
            "blockers": [b.to_dict() for b in self.blockers],
            "warnings": [w.to_dict() for w in self.warnings],
            "billing_group": self.billing_group,
        }


# =============================================================================
# LOOKUPS
# =============================================================================

def _get_tab(tab_id: str, org_id: str, *, for_update: bool = False) -> Tab:
    q = db.session.query(Tab).filter_by(id=tab_id, org_id=org_id)
    if for_update:
        q = lock_for_update(q)
    tab = q.first()
    if not tab:
        raise NotFoundError(f"Tab {tab_id} not found")
    return tab


def _get_group(group_id: str, org_id: str, *, for_update: bool = False) -> BillingGroup:
    q = (
        db.session.query(BillingGroup)
        .join(Tab, BillingGroup.tab_id == Tab.id)
        .filter(BillingGroup.id == group_id, Tab.org_id == org_id)
    )
    if for_update:
        q = lock_for_update(q)
    group = q.first()
    if not group:
        raise NotFoundError(f"Billing group {group_id} not found")
    return group


def get_billing_group(group_id: str, org_id: str) -> BillingGroup:
    return _get_group(group_id, org_id)


def list_billing_groups(tab_id: str, org_id: str) -> list[BillingGroup]:
    tab = _get_tab(tab_id, org_id)
    return list(tab.billing_groups)


def _group_snapshot(group: BillingGroup) -> dict:
    return {f: getattr(group, f) for f in AUDITED_GROUP_FIELDS}


def _enforce_group_type_rules(group_type: str, credit_limit_cents, deposit_amount_cents) -> None:
    if group_type not in GROUP_TYPES:
        raise ValidationError(
            f"group_type must be one of: {', '.join(GROUP_TYPES)}",
            {"group_type": f"must be one of: {', '.join(GROUP_TYPES)}"},
        )
    if group_type == GROUP_TYPE_CREDIT and not credit_limit_cents:
        raise ValidationError(
            "Credit billing groups require a positive credit_limit_cents",
            {"credit_limit_cents": "is required for credit groups"},
        )
    if group_type == GROUP_TYPE_DEPOSIT and not deposit_amount_cents:
        raise ValidationError(
            "Deposit billing groups require a positive deposit_amount_cents",
            {"deposit_amount_cents": "is required for deposit groups"},
        )


def _is_unpaid(item: LineItem) -> bool:
    group = item.billing_group
    invoice = group.invoice if group is not None else None
    return invoice is None or invoice.status != INVOICE_STATUS_PAID


# =============================================================================
# CREATE / UPDATE
# =============================================================================

def create_billing_group(
    tab_id: str,
    org_id: str,
    actor_id: str,
    payload: dict,
) -> BillingGroup:
    """
    Create one billing group on a tab.

    payload: name (required), group_type (default standard), credit_limit_cents,
    deposit_amount_cents, payer_email, po_number.

    Raises:
        ValidationError: bad fields or per-type constraint violated
        NotFoundError: tab missing or in another organization
        ConflictError: tab is void
    """
    patch = validate_payload(model=BillingGroup, payload=payload, policy=GROUP_CREATE_POLICY, partial=False)
    enforce_amount_range(patch, "credit_limit_cents", "deposit_amount_cents")
    patch.setdefault("group_type", GROUP_TYPES[0])
    _enforce_group_type_rules(
        patch["group_type"],
        patch.get("credit_limit_cents"),
        patch.get("deposit_amount_cents"),
    )

    def _op():
        tab = _get_tab(tab_id, org_id, for_update=True)
        if tab.status == TAB_STATUS_VOID:
            raise ConflictError("Cannot add billing groups to a void tab")

        group = BillingGroup(tab_id=tab.id, **patch)
        db.session.add(group)
        db.session.flush()

        audit_service.record_event(
            org_id=org_id,
            entity_type=ENTITY_BILLING_GROUP,
            entity_id=group.id,
            action=ACTION_CREATED,
            actor_id=actor_id,
            changes=audit_service.diff({}, _group_snapshot(group)),
            metadata={"tab_id": tab.id},
        )
        db.session.commit()
        return group

    return run_with_retry(_op)


def update_billing_group(group_id: str, org_id: str, actor_id: str, payload: dict) -> BillingGroup:
    """Patch a group's editable fields; one 'updated' entry carrying the diff, none if nothing changed."""
    patch = validate_payload(model=BillingGroup, payload=payload, policy=GROUP_UPDATE_POLICY, partial=True)
    enforce_amount_range(patch, "credit_limit_cents", "deposit_amount_cents")
    if "status" in patch and patch["status"] not in GROUP_STATUSES:
        raise ValidationError(
            f"status must be one of: {', '.join(GROUP_STATUSES)}",
            {"status": f"must be one of: {', '.join(GROUP_STATUSES)}"},
        )

    def _op():
        group = _get_group(group_id, org_id, for_update=True)
        before = _group_snapshot(group)

        for key, value in patch.items():
            setattr(group, key, value)
        _enforce_group_type_rules(group.group_type, group.credit_limit_cents, group.deposit_amount_cents)

        changes = audit_service.diff(before, _group_snapshot(group))
        if changes:
            audit_service.record_event(
                org_id=org_id,
                entity_type=ENTITY_BILLING_GROUP,
                entity_id=group.id,
                action=ACTION_UPDATED,
                actor_id=actor_id,
                changes=changes,
                metadata={"tab_id": group.tab_id},
            )
        db.session.commit()
        return group

    return run_with_retry(_op)


# =============================================================================
# ASSIGNMENT
# =============================================================================

def assign_line_items(tab_id: str, org_id: str, actor_id: str, assignments: Any) -> list[LineItem]:
    """
    Manually (re)assign line items.

    assignments: [{"line_item_id": ..., "billing_group_id": ... | null}]
    A null billing_group_id unassigns the item. One 'assigned' audit entry is
    written per item whose group actually changes.
    """
    if not isinstance(assignments, list) or not assignments:
        raise ValidationError("assignments must be a non-empty list", {"assignments": "must be a non-empty list"})
    for i, a in enumerate(assignments):
        if not isinstance(a, dict) or not a.get("line_item_id"):
            raise ValidationError(
                f"assignments[{i}].line_item_id is required",
                {f"assignments[{i}].line_item_id": "is required"},
            )

    def _op():
        tab = _get_tab(tab_id, org_id, for_update=True)
        if tab.status == TAB_STATUS_VOID:
            raise ConflictError("Cannot reassign line items on a void tab")

        items = {i.id: i for i in tab.line_items}
        groups = {g.id: g for g in tab.billing_groups}

        changed = []
        for a in assignments:
            item = items.get(a["line_item_id"])
            if item is None:
                raise ValidationError(
                    f"Line item {a['line_item_id']} does not belong to tab {tab_id}",
                    {"line_item_id": a["line_item_id"]},
                )
            target_id = a.get("billing_group_id")
            if target_id is not None and target_id not in groups:
                raise ValidationError(
                    f"Billing group {target_id} does not belong to tab {tab_id}",
                    {"billing_group_id": target_id},
                )
            if item.billing_group_id == target_id:
                continue

            audit_service.record_event(
                org_id=org_id,
                entity_type=ENTITY_LINE_ITEM,
                entity_id=item.id,
                action=ACTION_ASSIGNED,
                actor_id=actor_id,
                changes={"billing_group_id": {"from": item.billing_group_id, "to": target_id}},
                metadata={"tab_id": tab.id},
            )
            item.billing_group_id = target_id
            changed.append(item)

        db.session.commit()
        return changed

    return run_with_retry(_op)


# =============================================================================
# SPLITTING
# =============================================================================

def _items_in_order(tab_id: str) -> list[LineItem]:
    return (
        db.session.query(LineItem)
        .filter(LineItem.tab_id == tab_id)
        .order_by(LineItem.position.asc())
        .all()
    )


def preview_split(tab_id: str, org_id: str, strategy: SplitStrategy) -> AllocationPlan:
    """Run the allocation engine without persisting anything."""
    tab = _get_tab(tab_id, org_id)
    return allocate(tab.id, _items_in_order(tab.id), strategy)


def apply_split(tab_id: str, org_id: str, actor_id: str, strategy: SplitStrategy) -> dict:
    """
    Split a tab: create the planned groups and assign every line item, in one transaction.

    Items already in other groups are moved; their old groups are left in place.

    Returns:
        {message, split_type, groups_created, items_assigned, groups: [{id, name, type, items_count}]}
    """
    def _op():
        tab = _get_tab(tab_id, org_id, for_update=True)
        if tab.status == TAB_STATUS_VOID:
            raise ConflictError("Cannot split a void tab")

        items = _items_in_order(tab.id)
        plan = allocate(tab.id, items, strategy)

        groups = []
        for group_def in plan.group_defs:
            group = BillingGroup(tab_id=tab.id, name=group_def.name, group_type=group_def.group_type)
            db.session.add(group)
            groups.append(group)
        db.session.flush()

        for group in groups:
            audit_service.record_event(
                org_id=org_id,
                entity_type=ENTITY_BILLING_GROUP,
                entity_id=group.id,
                action=ACTION_CREATED,
                actor_id=actor_id,
                changes=audit_service.diff({}, _group_snapshot(group)),
                metadata={"tab_id": tab.id, "split_type": plan.split_type},
            )

        by_id = {i.id: i for i in items}
        counts = [0] * len(groups)
        for item_id, index in plan.assignments:
            item = by_id[item_id]
            target = groups[index]
            audit_service.record_event(
                org_id=org_id,
                entity_type=ENTITY_LINE_ITEM,
                entity_id=item.id,
                action=ACTION_ASSIGNED,
                actor_id=actor_id,
                changes={"billing_group_id": {"from": item.billing_group_id, "to": target.id}},
                metadata={"tab_id": tab.id, "split_type": plan.split_type},
            )
            item.billing_group_id = target.id
            counts[index] += 1

        db.session.commit()

        current_app.logger.info(
            "Split tab %s (%s) into %d groups, %d items assigned, actor=%s",
            tab.id, plan.split_type, len(groups), len(plan.assignments), actor_id,
        )
        return {
            "message": "Tab split successfully",
            "split_type": plan.split_type,
            "groups_created": len(groups),
            "items_assigned": len(plan.assignments),
            "groups": [
                {"id": g.id, "name": g.name, "type": g.group_type, "items_count": counts[i]}
                for i, g in enumerate(groups)
            ],
        }

    return run_with_retry(_op)


def get_tab_billing_summary(tab_id: str, org_id: str) -> dict:
    """Per-group totals plus whatever is still unassigned."""
    tab = _get_tab(tab_id, org_id)
    items = _items_in_order(tab.id)

    groups = []
    for group in tab.billing_groups:
        group_items = [i for i in items if i.billing_group_id == group.id]
        groups.append({
            **group.to_dict(),
            "items_count": len(group_items),
            "total_cents": sum(i.total_cents for i in group_items),
            "deposit_remaining_cents": group.deposit_remaining_cents,
            "invoice_status": group.invoice.status if group.invoice else None,
        })

    unassigned = [i for i in items if i.billing_group_id is None]
    return {
        "tab_id": tab.id,
        "status": tab.status,
        "total_cents": tab.total_cents,
        "items_total_cents": sum(i.total_cents for i in items),
        "billing_groups": groups,
        "unassigned": {
            "items_count": len(unassigned),
            "total_cents": sum(i.total_cents for i in unassigned),
            "line_item_ids": [i.id for i in unassigned],
        },
    }


# =============================================================================
# DELETION
# =============================================================================

def _resolve_move_target(group: BillingGroup, org_id: str, target_id: Optional[str]) -> Optional[BillingGroup]:
    if target_id is None:
        return None
    if target_id == group.id:
        raise ValidationError(
            "Cannot move line items to the group being deleted",
            {"move_line_items_to_group_id": "must differ from the group being deleted"},
        )
    target = (
        db.session.query(BillingGroup)
        .join(Tab, BillingGroup.tab_id == Tab.id)
        .filter(BillingGroup.id == target_id, Tab.org_id == org_id)
        .first()
    )
    if target is None:
        raise ValidationError(
            f"Target billing group {target_id} not found",
            {"move_line_items_to_group_id": "not found"},
        )
    if target.tab_id != group.tab_id:
        raise ValidationError(
            "Target billing group belongs to a different tab",
            {"move_line_items_to_group_id": "must belong to the same tab"},
        )
    return target


def _deletion_check(group: BillingGroup, target: Optional[BillingGroup]) -> DeletionCheck:
    blockers: list[Finding] = []
    warnings: list[Finding] = []

    invoice: Optional[Invoice] = group.invoice
    if invoice is not None and (invoice.paid_amount_cents or 0) > 0:
        blockers.append(Finding(
            BLOCKER_INVOICE,
            f"Invoice {invoice.invoice_number} has {format_cents(invoice.paid_amount_cents)} paid. "
            "Refund or void the invoice first.",
            {
                "invoice_id": invoice.id,
                "invoice_number": invoice.invoice_number,
                "paid_amount_cents": invoice.paid_amount_cents,
            },
        ))

    payments = (
        db.session.query(Payment)
        .filter(Payment.billing_group_id == group.id, Payment.status == PAYMENT_STATUS_SUCCEEDED)
        .order_by(Payment.created_at.asc())
        .all()
    )
    if payments:
        total = sum(p.amount_cents for p in payments)
        blockers.append(Finding(
            BLOCKER_PAYMENT,
            f"Billing group has {len(payments)} successful payment(s) totaling {format_cents(total)}.",
            {
                "count": len(payments),
                "total_cents": total,
                "payment_ids": [p.id for p in payments],
            },
        ))

    items = list(group.line_items)
    if items and target is None:
        blockers.append(Finding(
            BLOCKER_LINE_ITEMS,
            f"Billing group has {len(items)} assigned line item(s). "
            "Move them to another group or unassign them first.",
            {"count": len(items), "line_item_ids": [i.id for i in items]},
        ))

    unpaid = [i for i in items if _is_unpaid(i)] if target is None else []
    if unpaid:
        total = sum(i.total_cents for i in unpaid)
        warnings.append(Finding(
            WARNING_UNPAID_ITEMS,
            f"{len(unpaid)} unpaid line item(s) totaling {format_cents(total)} will lose their group association.",
            {"count": len(unpaid), "total_cents": total},
        ))

    if invoice is not None and invoice.status == INVOICE_STATUS_DRAFT and invoice.total_cents:
        warnings.append(Finding(
            WARNING_DRAFT_INVOICE,
            f"Draft invoice {invoice.invoice_number} for {format_cents(invoice.total_cents)} will be deleted.",
            {"invoice_id": invoice.id, "invoice_number": invoice.invoice_number, "total_cents": invoice.total_cents},
        ))

    summary = group.to_dict()
    summary["line_items_count"] = len(items)
    return DeletionCheck(
        can_delete=not blockers,
        blockers=blockers,
        warnings=warnings,
        billing_group=summary,
    )


def validate_deletion(
    group_id: str,
    org_id: str,
    move_line_items_to_group_id: Optional[str] = None,
) -> DeletionCheck:
    """Read-only deletion safety check."""
    group = _get_group(group_id, org_id)
    target = _resolve_move_target(group, org_id, move_line_items_to_group_id)
    return _deletion_check(group, target)


def delete_billing_group(
    group_id: str,
    org_id: str,
    actor_id: str,
    move_line_items_to_group_id: Optional[str] = None,
    force: bool = False,
    privileged: bool = False,
) -> AuditEntry:
    """
    Delete a billing group after re-running the safety check under lock.

    Line items move to move_line_items_to_group_id when given, otherwise they
    are unassigned. A draft invoice goes with the group; any other invoice is
    detached and kept.

    Raises:
        ForbiddenError: force requested by a non-privileged actor
        DeletionBlockedError: blockers found and not forced
    """
    if force and not privileged:
        raise ForbiddenError("Only privileged roles may force a billing group deletion")

    def _op():
        group = _get_group(group_id, org_id, for_update=True)
        target = _resolve_move_target(group, org_id, move_line_items_to_group_id)
        check = _deletion_check(group, target)

        if not check.can_delete and not force:
            raise DeletionBlockedError(check)

        before = group.to_dict()
        rule_ids = [r.id for r in group.rules]
        moved_ids = []
        for item in list(group.line_items):
            item.billing_group = target
            moved_ids.append(item.id)

        invoice = group.invoice
        invoice_action = None
        if invoice is not None:
            group.invoice = None
            if invoice.status == INVOICE_STATUS_DRAFT:
                invoice_action = {"invoice_id": invoice.id, "invoice_number": invoice.invoice_number, "action": "deleted"}
                db.session.flush()
                db.session.delete(invoice)
            else:
                invoice_action = {"invoice_id": invoice.id, "invoice_number": invoice.invoice_number, "action": "detached"}

        # Payments keep their history; only the group reference goes.
        db.session.query(Payment).filter(Payment.billing_group_id == group.id).update(
            {Payment.billing_group_id: None}, synchronize_session="fetch"
        )

        db.session.flush()
        db.session.delete(group)

        metadata = {
            "tab_id": before["tab_id"],
            "moved_line_item_ids": moved_ids,
            "moved_to_group_id": target.id if target is not None else None,
            "warnings": [w.to_dict() for w in check.warnings],
        }
        if rule_ids:
            metadata["deleted_rule_ids"] = rule_ids
        if invoice_action:
            metadata["invoice_action"] = invoice_action
        if force:
            metadata["forced"] = True
            metadata["bypassed_blockers"] = [b.to_dict() for b in check.blockers]

        entry = audit_service.record_event(
            org_id=org_id,
            entity_type=ENTITY_BILLING_GROUP,
            entity_id=group_id,
            action=ACTION_DELETED,
            actor_id=actor_id,
            changes={k: {"from": v, "to": None} for k, v in before.items() if v is not None},
            metadata=metadata,
        )
        db.session.commit()

        current_app.logger.info(
            "Deleted billing group %s (tab %s), %d items %s, forced=%s, actor=%s",
            group_id, before["tab_id"], len(moved_ids),
            f"moved to {target.id}" if target is not None else "unassigned",
            bool(metadata.get("forced")), actor_id,
        )
        return entry

    return run_with_retry(_op)
