# Overview: Service-layer operations for billing group rules; CRUD and priority-ordered auto-assignment.

"""
Billing Group Rule Service

Rules hang off a billing group and describe which line items should land in
it. Auto-assignment gathers the active rules of every active group on the tab,
orders them by priority (lower first, then creation order), and lets the first
rule whose conditions all match decide each item.

CONDITIONS (all optional, all must match):
    categories    item category is one of these
    amount        min_cents <= item total <= max_cents (either bound optional)
    time          item created_at time of day inside [start, end); wraps past midnight
    days_of_week  item created_at day, 0 = Sunday .. 6 = Saturday

Items without created_at never match a time or day condition. A rule with no
conditions matches every item.

ACTIONS:
    auto_assign       move the item into the rule's group
    require_approval, notify, reject
                      the item stays where it is and is reported as held
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional

from flask import current_app

from ..extensions import db
from ..models import AuditEntry, BillingGroup, BillingGroupRule, LineItem, Tab
from ..models.audit import (
    ACTION_ASSIGNED,
    ACTION_CREATED,
    ACTION_DELETED,
    ACTION_UPDATED,
    ENTITY_BILLING_GROUP_RULE,
    ENTITY_LINE_ITEM,
)
from ..models.billing import GROUP_STATUS_ACTIVE, RULE_ACTION_AUTO_ASSIGN, RULE_ACTIONS, RULE_PRIORITY_DEFAULT
from ..models.tabs import TAB_STATUS_VOID
from ..validation import ConflictError, ModelValidationPolicy, NotFoundError, ValidationError, validate_payload
from . import audit_service
from .allocation_service import TimeWindow, parse_time
from .concurrency import lock_for_update, run_with_retry


PRIORITY_MIN = 1
PRIORITY_MAX = 1000

RULE_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={"name", "priority", "conditions", "action", "is_active"},
    required_on_create={"name"},
)

RULE_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields={"name", "priority", "conditions", "action", "is_active"},
)

AUDITED_RULE_FIELDS = ("name", "priority", "conditions", "action", "is_active")

CONDITION_KEYS = ("categories", "amount", "time", "days_of_week")


# =============================================================================
# CONDITIONS
# =============================================================================

@dataclass(frozen=True)
class AmountRange:
    min_cents: Optional[int] = None
    max_cents: Optional[int] = None

    def contains(self, cents: int) -> bool:
        if self.min_cents is not None and cents < self.min_cents:
            return False
        if self.max_cents is not None and cents > self.max_cents:
            return False
        return True


@dataclass(frozen=True)
class RuleConditions:
    categories: frozenset[str] = frozenset()
    amount: Optional[AmountRange] = None
    time_window: Optional[TimeWindow] = None
    days_of_week: frozenset[int] = frozenset()

    def matches(self, item) -> bool:
        if self.categories and (item.category or "").strip() not in self.categories:
            return False
        if self.amount is not None and not self.amount.contains(item.total_cents or 0):
            return False
        if self.time_window is not None or self.days_of_week:
            moment = item.created_at
            if moment is None:
                return False
            if self.time_window is not None and not self.time_window.contains(moment.time()):
                return False
            # datetime.weekday() is Monday = 0; rules count from Sunday = 0
            if self.days_of_week and (moment.weekday() + 1) % 7 not in self.days_of_week:
                return False
        return True

    def to_dict(self) -> dict:
        data: dict = {}
        if self.categories:
            data["categories"] = sorted(self.categories)
        if self.amount is not None:
            data["amount"] = {"min_cents": self.amount.min_cents, "max_cents": self.amount.max_cents}
        if self.time_window is not None:
            data["time"] = {
                "start": self.time_window.start.strftime("%H:%M"),
                "end": self.time_window.end.strftime("%H:%M"),
            }
        if self.days_of_week:
            data["days_of_week"] = sorted(self.days_of_week)
        return data


def _optional_cents(value: Any, field_name: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{field_name} must be a non-negative integer", {field_name: "must be a non-negative integer"})
    return value


def parse_rule_conditions(raw: Any) -> RuleConditions:
    """Validate a conditions object, collecting every field error before raising."""
    if raw is None:
        return RuleConditions()
    if not isinstance(raw, dict):
        raise ValidationError("conditions must be an object", {"conditions": "must be an object"})

    errors: dict[str, str] = {}
    for key in raw:
        if key not in CONDITION_KEYS:
            errors[f"conditions.{key}"] = "not allowed"

    categories = raw.get("categories")
    if categories is None:
        categories = []
    if not isinstance(categories, list) or not all(isinstance(c, str) for c in categories):
        errors["conditions.categories"] = "must be a list of strings"
        categories = []

    amount = None
    raw_amount = raw.get("amount")
    if raw_amount is not None:
        if not isinstance(raw_amount, dict):
            errors["conditions.amount"] = "must be an object with min_cents and/or max_cents"
        else:
            bounds = {}
            for bound in ("min_cents", "max_cents"):
                try:
                    bounds[bound] = _optional_cents(raw_amount.get(bound), f"conditions.amount.{bound}")
                except ValidationError as exc:
                    errors.update(exc.details)
            lo, hi = bounds.get("min_cents"), bounds.get("max_cents")
            if lo is not None and hi is not None and lo > hi:
                errors["conditions.amount"] = "min_cents cannot exceed max_cents"
            amount = AmountRange(min_cents=lo, max_cents=hi)

    window = None
    raw_time = raw.get("time")
    if raw_time is not None:
        if not isinstance(raw_time, dict):
            errors["conditions.time"] = "must be an object with start and end"
        else:
            parsed = {}
            for bound in ("start", "end"):
                try:
                    parsed[bound] = parse_time(raw_time.get(bound), f"conditions.time.{bound}")
                except ValidationError as exc:
                    errors.update(exc.details)
            if len(parsed) == 2:
                window = TimeWindow(start=parsed["start"], end=parsed["end"])

    days = raw.get("days_of_week")
    if days is None:
        days = []
    if not isinstance(days, list) or not all(
        isinstance(d, int) and not isinstance(d, bool) and 0 <= d <= 6 for d in days
    ):
        errors["conditions.days_of_week"] = "must be a list of integers 0-6"
        days = []

    if errors:
        raise ValidationError("Invalid rule conditions", errors)

    return RuleConditions(
        categories=frozenset(c.strip() for c in categories if c.strip()),
        amount=amount if amount and (amount.min_cents is not None or amount.max_cents is not None) else None,
        time_window=window,
        days_of_week=frozenset(days),
    )


def _normalize_rule_patch(patch: dict) -> dict:
    if "priority" in patch:
        priority = patch["priority"]
        if priority is None or not (PRIORITY_MIN <= priority <= PRIORITY_MAX):
            raise ValidationError(
                f"priority must be between {PRIORITY_MIN} and {PRIORITY_MAX}",
                {"priority": f"must be between {PRIORITY_MIN} and {PRIORITY_MAX}"},
            )
    if "action" in patch and patch["action"] not in RULE_ACTIONS:
        raise ValidationError(
            f"action must be one of: {', '.join(RULE_ACTIONS)}",
            {"action": f"must be one of: {', '.join(RULE_ACTIONS)}"},
        )
    if "is_active" in patch and patch["is_active"] is None:
        raise ValidationError("is_active cannot be null", {"is_active": "cannot be null"})
    if "conditions" in patch:
        patch["conditions"] = parse_rule_conditions(patch["conditions"]).to_dict()
    return patch


# =============================================================================
# EVALUATION
# =============================================================================

@dataclass(frozen=True)
class RuleMatch:
    line_item_id: Any
    billing_group_id: str
    rule_id: str
    action: str

    def to_dict(self) -> dict:
        return {
            "line_item_id": self.line_item_id,
            "billing_group_id": self.billing_group_id,
            "rule_id": self.rule_id,
            "action": self.action,
        }


def order_rules(rules: Iterable[BillingGroupRule]) -> list[BillingGroupRule]:
    return sorted(rules, key=lambda r: (r.priority, r.created_at, r.id))


def match_line_items(items: Iterable, rules: Iterable[BillingGroupRule]) -> dict:
    """
    First matching rule per item, rules taken in priority order.

    Pure: nothing is read from or written to the session.

    Returns:
        {line_item_id: RuleMatch | None}
    """
    compiled = [(rule, parse_rule_conditions(rule.conditions)) for rule in order_rules(rules)]
    result = {}
    for item in items:
        result[item.id] = None
        for rule, conditions in compiled:
            if conditions.matches(item):
                result[item.id] = RuleMatch(item.id, rule.billing_group_id, rule.id, rule.action)
                break
    return result


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


def _get_rule(group: BillingGroup, rule_id: str, *, for_update: bool = False) -> BillingGroupRule:
    q = db.session.query(BillingGroupRule).filter_by(id=rule_id, billing_group_id=group.id)
    if for_update:
        q = lock_for_update(q)
    rule = q.first()
    if not rule:
        raise NotFoundError(f"Rule {rule_id} not found")
    return rule


def _rule_snapshot(rule: BillingGroupRule) -> dict:
    return {f: getattr(rule, f) for f in AUDITED_RULE_FIELDS}


# =============================================================================
# CRUD
# =============================================================================

def list_rules(group_id: str, org_id: str, *, include_inactive: bool = True) -> list[BillingGroupRule]:
    group = _get_group(group_id, org_id)
    rules = order_rules(group.rules)
    if not include_inactive:
        rules = [r for r in rules if r.is_active]
    return rules


def create_rule(group_id: str, org_id: str, actor_id: str, payload: dict) -> BillingGroupRule:
    """
    Add a rule to a billing group.

    payload: name (required), priority (1..1000, default 100), conditions,
    action (default auto_assign), is_active (default true).
    """
    patch = validate_payload(model=BillingGroupRule, payload=payload, policy=RULE_CREATE_POLICY, partial=False)
    patch.setdefault("priority", RULE_PRIORITY_DEFAULT)
    patch.setdefault("conditions", {})
    patch.setdefault("action", RULE_ACTION_AUTO_ASSIGN)
    patch.setdefault("is_active", True)
    patch = _normalize_rule_patch(patch)

    def _op():
        group = _get_group(group_id, org_id, for_update=True)
        if group.tab.status == TAB_STATUS_VOID:
            raise ConflictError("Cannot add rules to a billing group on a void tab")

        rule = BillingGroupRule(billing_group_id=group.id, **patch)
        db.session.add(rule)
        db.session.flush()

        audit_service.record_event(
            org_id=org_id,
            entity_type=ENTITY_BILLING_GROUP_RULE,
            entity_id=rule.id,
            action=ACTION_CREATED,
            actor_id=actor_id,
            changes=audit_service.diff({}, _rule_snapshot(rule)),
            metadata={"billing_group_id": group.id, "tab_id": group.tab_id},
        )
        db.session.commit()
        return rule

    rule = run_with_retry(_op)
    current_app.logger.info("Created rule %s on billing group %s, actor=%s", rule.id, group_id, actor_id)
    return rule


def update_rule(group_id: str, rule_id: str, org_id: str, actor_id: str, payload: dict) -> BillingGroupRule:
    patch = validate_payload(model=BillingGroupRule, payload=payload, policy=RULE_UPDATE_POLICY, partial=True)
    patch = _normalize_rule_patch(patch)

    def _op():
        group = _get_group(group_id, org_id)
        rule = _get_rule(group, rule_id, for_update=True)
        before = _rule_snapshot(rule)

        for key, value in patch.items():
            setattr(rule, key, value)

        changes = audit_service.diff(before, _rule_snapshot(rule))
        if changes:
            audit_service.record_event(
                org_id=org_id,
                entity_type=ENTITY_BILLING_GROUP_RULE,
                entity_id=rule.id,
                action=ACTION_UPDATED,
                actor_id=actor_id,
                changes=changes,
                metadata={"billing_group_id": group.id, "tab_id": group.tab_id},
            )
        db.session.commit()
        return rule

    return run_with_retry(_op)


def delete_rule(group_id: str, rule_id: str, org_id: str, actor_id: str) -> AuditEntry:
    def _op():
        group = _get_group(group_id, org_id)
        rule = _get_rule(group, rule_id, for_update=True)
        before = _rule_snapshot(rule)

        group.rules.remove(rule)
        db.session.delete(rule)

        entry = audit_service.record_event(
            org_id=org_id,
            entity_type=ENTITY_BILLING_GROUP_RULE,
            entity_id=rule_id,
            action=ACTION_DELETED,
            actor_id=actor_id,
            changes={k: {"from": v, "to": None} for k, v in before.items() if v is not None},
            metadata={"billing_group_id": group.id, "tab_id": group.tab_id},
        )
        db.session.commit()
        return entry

    entry = run_with_retry(_op)
    current_app.logger.info("Deleted rule %s from billing group %s, actor=%s", rule_id, group_id, actor_id)
    return entry


# =============================================================================
# AUTO-ASSIGNMENT
# =============================================================================

def _tab_rules(tab: Tab) -> list[BillingGroupRule]:
    return [
        rule
        for group in tab.billing_groups
        if group.status == GROUP_STATUS_ACTIVE
        for rule in group.rules
        if rule.is_active
    ]


def _candidate_items(tab: Tab, only_unassigned: bool) -> list[LineItem]:
    items = sorted(tab.line_items, key=lambda i: i.position)
    if only_unassigned:
        items = [i for i in items if i.billing_group_id is None]
    return items


def _plan(tab: Tab, only_unassigned: bool) -> dict:
    items = _candidate_items(tab, only_unassigned)
    matches = match_line_items(items, _tab_rules(tab))

    assign, held, unmatched = [], [], []
    for item in items:
        match = matches[item.id]
        if match is None:
            unmatched.append(item.id)
        elif match.action != RULE_ACTION_AUTO_ASSIGN:
            held.append(match)
        elif item.billing_group_id != match.billing_group_id:
            assign.append(match)
    return {"assign": assign, "held": held, "unmatched": unmatched}


def preview_auto_assign(tab_id: str, org_id: str, *, only_unassigned: bool = True) -> dict:
    """Rule evaluation without persisting anything."""
    tab = _get_tab(tab_id, org_id)
    plan = _plan(tab, only_unassigned)
    return {
        "tab_id": tab.id,
        "assignments": [m.to_dict() for m in plan["assign"]],
        "held": [m.to_dict() for m in plan["held"]],
        "unmatched": plan["unmatched"],
    }


def auto_assign_line_items(tab_id: str, org_id: str, actor_id: str, *, only_unassigned: bool = True) -> dict:
    """
    Apply the tab's rules and move matched items, in one transaction.

    Items already in the group their rule picks are left alone and not
    reported. One 'assigned' entry per moved item, carrying the rule id.

    Returns:
        {message, items_assigned, assignments, held, unmatched}
    """
    if not isinstance(only_unassigned, bool):
        raise ValidationError("only_unassigned must be a boolean", {"only_unassigned": "must be a boolean"})

    def _op():
        tab = _get_tab(tab_id, org_id, for_update=True)
        if tab.status == TAB_STATUS_VOID:
            raise ConflictError("Cannot auto-assign line items on a void tab")

        plan = _plan(tab, only_unassigned)
        items = {i.id: i for i in tab.line_items}
        for match in plan["assign"]:
            item = items[match.line_item_id]
            audit_service.record_event(
                org_id=org_id,
                entity_type=ENTITY_LINE_ITEM,
                entity_id=item.id,
                action=ACTION_ASSIGNED,
                actor_id=actor_id,
                changes={"billing_group_id": {"from": item.billing_group_id, "to": match.billing_group_id}},
                metadata={"tab_id": tab.id, "rule_id": match.rule_id},
            )
            item.billing_group_id = match.billing_group_id

        db.session.commit()

        current_app.logger.info(
            "Auto-assigned %d items on tab %s (%d held, %d unmatched), actor=%s",
            len(plan["assign"]), tab.id, len(plan["held"]), len(plan["unmatched"]), actor_id,
        )
        return {
            "message": "Line items auto-assigned",
            "items_assigned": len(plan["assign"]),
            "assignments": [m.to_dict() for m in plan["assign"]],
            "held": [m.to_dict() for m in plan["held"]],
            "unmatched": plan["unmatched"],
        }

    return run_with_retry(_op)
