# Overview: Service-layer operations for tab voiding; safety check, audited void/restore and bulk voiding.

"""
Tab Voiding Service

================================================================================
PURPOSE: Retire a tab (void) safely, reversibly and with a full audit trail
================================================================================

STATE MACHINE:
    open | partial | paid  --void-->  void  --restore-->  previous status

    Voiding is refused while money has moved (succeeded payments, paid
    invoices) unless the caller explicitly skips validation.

VOID RECORD:
    tab.meta["void"]          the current VoidRecord (who, when, why, prior status,
                              and once restored: who, when, why)
    tab.meta["void_history"]  earlier VoidRecords, oldest first

RULES (NON-NEGOTIABLE):
1. The "not already void" check is repeated after the row lock is taken.
2. Each void and each restore writes exactly one audit entry, in the same
   transaction as the status change.
3. Restoring does not reopen billing groups closed by the void.
4. Bulk voids run one transaction per tab; one failure does not undo the rest.
================================================================================
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from flask import current_app

from ..extensions import db
from ..models import AuditEntry, Invoice, LineItem, Payment, Tab
from ..models.audit import ACTION_RESTORED, ACTION_VOIDED, ENTITY_TAB
from ..models.billing import (
    GROUP_STATUS_ACTIVE,
    GROUP_STATUS_CLOSED,
    INVOICE_STATUS_DRAFT,
    INVOICE_STATUS_PAID,
    INVOICE_STATUS_VOID,
)
from ..models.tabs import PAYMENT_STATUS_SUCCEEDED, TAB_STATUS_OPEN, TAB_STATUS_VOID
from ..validation import ConflictError, NotFoundError, ValidationError
from . import audit_service
from .billing_group_service import Finding
from .concurrency import lock_for_update, run_with_retry
from tabbilling.time_utils import format_cents, parse_iso_datetime, to_utc_z, utcnow


BLOCKER_PAYMENT = "payment"
BLOCKER_INVOICE = "invoice"

WARNING_ACTIVE_GROUPS = "active_billing_groups"
WARNING_UNPAID_ITEMS = "unpaid_line_items"


class AlreadyVoidedError(ConflictError):
    def __init__(self, tab_id: str):
        super().__init__(f"Tab {tab_id} is already void", {"tab_id": tab_id})


class NotVoidedError(ConflictError):
    def __init__(self, tab_id: str):
        super().__init__(f"Tab {tab_id} is not void", {"tab_id": tab_id})


class CannotVoidError(ConflictError):
    """Void refused by the safety check; carries the check for the 409 body."""

    def __init__(self, check: "VoidCheck"):
        super().__init__("Tab cannot be voided", check.to_dict())
        self.check = check


@dataclass
class VoidRecord:
    """Provenance of one void (and its restore, once it happens)."""
    voided_at: str
    voided_by: str
    void_reason: str
    previous_status: str
    restored_at: Optional[str] = None
    restored_by: Optional[str] = None
    restore_reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict | None) -> Optional["VoidRecord"]:
        if not data:
            return None
        return cls(
            voided_at=data.get("voided_at"),
            voided_by=data.get("voided_by"),
            void_reason=data.get("void_reason"),
            previous_status=data.get("previous_status") or TAB_STATUS_OPEN,
            restored_at=data.get("restored_at"),
            restored_by=data.get("restored_by"),
            restore_reason=data.get("restore_reason"),
        )

    @property
    def voided_at_dt(self) -> Optional[datetime]:
        return parse_iso_datetime(self.voided_at)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class VoidCheck:
    can_void: bool
    blockers: list[Finding]
    warnings: list[Finding]
    tab_summary: dict

    def to_dict(self) -> dict:
        return {
            "can_void": self.can_void,
            "blockers": [b.to_dict() for b in self.blockers],
            "warnings": [w.to_dict() for w in self.warnings],
            "tab": self.tab_summary,
        }


def _get_tab(tab_id: str, org_id: str, *, for_update: bool = False) -> Tab:
    q = db.session.query(Tab).filter_by(id=tab_id, org_id=org_id)
    if for_update:
        q = lock_for_update(q)
    tab = q.first()
    if not tab:
        raise NotFoundError(f"Tab {tab_id} not found")
    return tab


def _unpaid_items(tab: Tab) -> list[LineItem]:
    unpaid = []
    for item in tab.line_items:
        group = item.billing_group
        invoice = group.invoice if group is not None else None
        if invoice is None or invoice.status != INVOICE_STATUS_PAID:
            unpaid.append(item)
    return unpaid


def _tab_invoices(tab: Tab) -> list[Invoice]:
    return [g.invoice for g in tab.billing_groups if g.invoice is not None]


# =============================================================================
# SAFETY CHECK
# =============================================================================

def _void_check(tab: Tab) -> VoidCheck:
    blockers: list[Finding] = []
    warnings: list[Finding] = []

    payments = (
        db.session.query(Payment)
        .filter(Payment.tab_id == tab.id, Payment.status == PAYMENT_STATUS_SUCCEEDED)
        .order_by(Payment.created_at.asc())
        .all()
    )
    if payments:
        total = sum(p.amount_cents for p in payments)
        blockers.append(Finding(
            BLOCKER_PAYMENT,
            f"Cannot void tab with {len(payments)} successful payment(s) totaling {format_cents(total)}. "
            "Payments must be refunded first.",
            {
                "count": len(payments),
                "total_cents": total,
                "payments": [
                    {
                        "id": p.id,
                        "amount_cents": p.amount_cents,
                        "processor": p.processor,
                        "processor_payment_id": p.processor_payment_id,
                    }
                    for p in payments
                ],
            },
        ))

    paid_invoices = [inv for inv in _tab_invoices(tab) if (inv.paid_amount_cents or 0) > 0]
    if paid_invoices:
        total = sum(inv.paid_amount_cents or 0 for inv in paid_invoices)
        blockers.append(Finding(
            BLOCKER_INVOICE,
            f"Cannot void tab with {len(paid_invoices)} invoice(s) carrying payments totaling {format_cents(total)}.",
            {
                "count": len(paid_invoices),
                "total_cents": total,
                "invoice_ids": [inv.id for inv in paid_invoices],
            },
        ))

    active_groups = [g for g in tab.billing_groups if g.status == GROUP_STATUS_ACTIVE]
    if active_groups:
        warnings.append(Finding(
            WARNING_ACTIVE_GROUPS,
            f"{len(active_groups)} active billing group(s) will be closed.",
            {"count": len(active_groups), "billing_group_ids": [g.id for g in active_groups]},
        ))

    unpaid = _unpaid_items(tab)
    if unpaid:
        total = sum(i.total_cents for i in unpaid)
        warnings.append(Finding(
            WARNING_UNPAID_ITEMS,
            f"{len(unpaid)} unpaid line item(s) totaling {format_cents(total)} will be voided.",
            {"count": len(unpaid), "total_cents": total},
        ))

    summary = {
        "id": tab.id,
        "status": tab.status,
        "total_cents": tab.total_cents,
        "paid_amount_cents": tab.paid_amount_cents,
        "line_items_count": len(tab.line_items),
        "billing_groups_count": len(tab.billing_groups),
    }
    return VoidCheck(can_void=not blockers, blockers=blockers, warnings=warnings, tab_summary=summary)


def validate_voiding(tab_id: str, org_id: str) -> VoidCheck:
    """
    Read-only void safety check.

    Raises:
        NotFoundError: tab missing or in another organization
        AlreadyVoidedError: tab is already void
    """
    tab = _get_tab(tab_id, org_id)
    if tab.status == TAB_STATUS_VOID:
        raise AlreadyVoidedError(tab.id)
    return _void_check(tab)


# =============================================================================
# VOID / RESTORE
# =============================================================================

def _void_locked_tab(
    tab: Tab,
    org_id: str,
    actor_id: str,
    reason: str,
    *,
    skip_validation: bool,
    close_active_billing_groups: bool,
    void_draft_invoices: bool,
) -> AuditEntry:
    if tab.status == TAB_STATUS_VOID:
        raise AlreadyVoidedError(tab.id)

    check = _void_check(tab)
    if not skip_validation and not check.can_void:
        raise CannotVoidError(check)

    previous_status = tab.status

    closed_groups = []
    if close_active_billing_groups:
        for group in tab.billing_groups:
            if group.status == GROUP_STATUS_ACTIVE:
                group.status = GROUP_STATUS_CLOSED
                closed_groups.append(group.id)

    invoice_actions = []
    if void_draft_invoices:
        for invoice in _tab_invoices(tab):
            if invoice.status == INVOICE_STATUS_DRAFT:
                invoice.status = INVOICE_STATUS_VOID
                invoice_actions.append({
                    "invoice_id": invoice.id,
                    "invoice_number": invoice.invoice_number,
                    "action": "voided",
                    "previous_status": INVOICE_STATUS_DRAFT,
                })

    now = utcnow()
    meta = dict(tab.meta or {})
    prior = meta.get("void")
    if prior:
        meta["void_history"] = list(meta.get("void_history") or []) + [prior]
    record = VoidRecord(
        voided_at=to_utc_z(now),
        voided_by=actor_id,
        void_reason=reason,
        previous_status=previous_status,
    )
    meta["void"] = record.to_dict()
    # Reassign so the JSON column registers the change
    tab.meta = meta
    tab.status = TAB_STATUS_VOID

    return audit_service.record_event(
        org_id=org_id,
        entity_type=ENTITY_TAB,
        entity_id=tab.id,
        action=ACTION_VOIDED,
        actor_id=actor_id,
        changes={"status": {"from": previous_status, "to": TAB_STATUS_VOID}},
        metadata={
            "reason": reason,
            "previous_status": previous_status,
            "invoice_actions": invoice_actions,
            "closed_billing_groups": closed_groups,
            "warnings": [w.to_dict() for w in check.warnings],
            "bypassed_blockers": [b.to_dict() for b in check.blockers] if skip_validation else [],
            "skipped_validation": skip_validation,
        },
        occurred_at=now,
    )


def void_tab(
    tab_id: str,
    org_id: str,
    actor_id: str,
    reason: str,
    skip_validation: bool = False,
    close_active_billing_groups: bool = True,
    void_draft_invoices: bool = True,
) -> AuditEntry:
    """
    Void a tab in one transaction and return its 'voided' audit entry.

    Raises:
        NotFoundError: tab missing or in another organization
        AlreadyVoidedError: tab already void (checked again under lock)
        CannotVoidError: blockers found and skip_validation is False
    """
    if not reason:
        raise ValidationError("reason is required", {"reason": "is required"})

    def _op():
        tab = _get_tab(tab_id, org_id, for_update=True)
        entry = _void_locked_tab(
            tab,
            org_id,
            actor_id,
            reason,
            skip_validation=skip_validation,
            close_active_billing_groups=close_active_billing_groups,
            void_draft_invoices=void_draft_invoices,
        )
        db.session.commit()
        return entry

    entry = run_with_retry(_op)
    current_app.logger.info(
        "Voided tab %s (was %s), skipped_validation=%s, actor=%s",
        tab_id, entry.meta.get("previous_status"), skip_validation, actor_id,
    )
    return entry


def restore_tab(tab_id: str, org_id: str, actor_id: str, reason: str) -> AuditEntry:
    """
    Return a void tab to the status it had before the void.

    Billing groups closed by the void stay closed; draft invoices voided by it
    stay void.

    Raises:
        NotVoidedError: tab is not void
    """
    if not reason:
        raise ValidationError("reason is required", {"reason": "is required"})

    def _op():
        tab = _get_tab(tab_id, org_id, for_update=True)
        if tab.status != TAB_STATUS_VOID:
            raise NotVoidedError(tab.id)

        meta = dict(tab.meta or {})
        record = VoidRecord.from_dict(meta.get("void"))
        restored_status = record.previous_status if record else TAB_STATUS_OPEN

        now = utcnow()
        if record is None:
            record = VoidRecord(
                voided_at=None,
                voided_by=None,
                void_reason=None,
                previous_status=restored_status,
            )
        record.restored_at = to_utc_z(now)
        record.restored_by = actor_id
        record.restore_reason = reason
        meta["void"] = record.to_dict()
        tab.meta = meta
        tab.status = restored_status

        entry = audit_service.record_event(
            org_id=org_id,
            entity_type=ENTITY_TAB,
            entity_id=tab.id,
            action=ACTION_RESTORED,
            actor_id=actor_id,
            changes={"status": {"from": TAB_STATUS_VOID, "to": restored_status}},
            metadata={
                "reason": reason,
                "restored_status": restored_status,
                "voided_at": record.voided_at,
                "voided_by": record.voided_by,
            },
            occurred_at=now,
        )
        db.session.commit()
        return entry

    entry = run_with_retry(_op)
    current_app.logger.info("Restored tab %s to %s, actor=%s", tab_id, entry.meta.get("restored_status"), actor_id)
    return entry


# =============================================================================
# READS
# =============================================================================

def get_voiding_history(tab_id: str, org_id: str) -> dict:
    """Current void record, earlier records and the tab's void/restore audit entries."""
    tab = _get_tab(tab_id, org_id)
    meta = tab.meta or {}
    entries = [
        e for e in audit_service.get_entity_history(org_id, ENTITY_TAB, tab.id)
        if e.action in (ACTION_VOIDED, ACTION_RESTORED)
    ]
    return {
        "tab_id": tab.id,
        "status": tab.status,
        "is_void": tab.status == TAB_STATUS_VOID,
        "current": meta.get("void"),
        "history": list(meta.get("void_history") or []),
        "audit_entries": [e.to_dict() for e in entries],
    }


def list_voided_tabs(
    org_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> dict:
    """
    Voided tabs, newest void first, filtered on the void timestamp.

    The void timestamp lives in JSON metadata, so filtering and ordering
    happen in Python over the org's void tabs.
    """
    tabs = (
        db.session.query(Tab)
        .filter(Tab.org_id == org_id, Tab.status == TAB_STATUS_VOID)
        .all()
    )

    rows = []
    for tab in tabs:
        record = VoidRecord.from_dict((tab.meta or {}).get("void"))
        voided_at = record.voided_at_dt if record else None
        if date_from is not None and (voided_at is None or voided_at < date_from):
            continue
        if date_to is not None and (voided_at is None or voided_at > date_to):
            continue
        rows.append((voided_at or datetime.min, tab, record))

    rows.sort(key=lambda r: (r[0], r[1].id), reverse=True)
    page = rows[offset:offset + limit]

    return {
        "tabs": [
            {**tab.to_dict(), "void": record.to_dict() if record else None}
            for _, tab, record in page
        ],
        "total_count": len(rows),
        "has_more": offset + limit < len(rows),
    }


# =============================================================================
# BULK
# =============================================================================

def bulk_void_tabs(
    tab_ids: list,
    org_id: str,
    actor_id: str,
    reason: str,
    skip_validation: bool = False,
    close_active_billing_groups: bool = True,
    void_draft_invoices: bool = True,
) -> dict:
    """
    Void up to BULK_VOID_MAX_TABS tabs, each in its own transaction.

    Returns:
        {results: [{tab_id, audit_entry_id}], errors: [{tab_id, type, error, ...}],
         summary: {total, succeeded, failed, blocked}}
    """
    max_tabs = current_app.config.get("BULK_VOID_MAX_TABS", 20)
    if not isinstance(tab_ids, list) or not (1 <= len(tab_ids) <= max_tabs):
        raise ValidationError(
            f"tab_ids must be a list of 1 to {max_tabs} ids",
            {"tab_ids": f"must contain 1 to {max_tabs} ids"},
        )
    if not all(isinstance(t, str) and t.strip() for t in tab_ids):
        raise ValidationError("tab_ids must be non-empty strings", {"tab_ids": "must contain non-empty strings"})
    if len(set(tab_ids)) != len(tab_ids):
        raise ValidationError("tab_ids must not contain duplicates", {"tab_ids": "contains duplicates"})

    results = []
    errors = []
    for tab_id in tab_ids:
        try:
            entry = void_tab(
                tab_id,
                org_id,
                actor_id,
                reason,
                skip_validation=skip_validation,
                close_active_billing_groups=close_active_billing_groups,
                void_draft_invoices=void_draft_invoices,
            )
        except CannotVoidError as e:
            errors.append({
                "tab_id": tab_id,
                "type": "blocked",
                "error": str(e),
                "blockers": [b.to_dict() for b in e.check.blockers],
            })
        except (NotFoundError, ConflictError) as e:
            errors.append({"tab_id": tab_id, "type": "error", "error": str(e)})
        else:
            results.append({"tab_id": tab_id, "audit_entry_id": entry.id})

    blocked = sum(1 for e in errors if e["type"] == "blocked")
    return {
        "results": results,
        "errors": errors,
        "summary": {
            "total": len(tab_ids),
            "succeeded": len(results),
            "failed": len(errors) - blocked,
            "blocked": blocked,
        },
    }
