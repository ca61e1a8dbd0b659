# Overview: Pure allocation engine; plans how a tab's line items are split across new billing groups.

"""
Tab Split Allocation Engine

================================================================================
PURPOSE: Turn (line items, split strategy) into (group definitions, assignments)
================================================================================

The engine never touches the database. billing_group_service.apply_split
persists its output inside one transaction; preview endpoints call it directly.

STRATEGIES (closed set):
    EvenSplit(N)              round-robin by item order, "Group 1".."Group N"
    CorporatePersonalSplit    "Corporate Expenses" / "Personal Expenses"
    CategorySplit             one group per category, plus "Uncategorized"

RULES:
1. Every item is assigned exactly once (assignments cover the input exactly).
2. Output depends only on input order and content; repeated calls are identical.
3. Strategy parameters are validated when the strategy is built, never mid-allocation.
================================================================================
"""

from __future__ import annotations

import re
import string
from dataclasses import dataclass, field
from datetime import datetime, time
from typing import Any, Iterable, Optional, Protocol, Union

from ..models.billing import GROUP_TYPE_CORPORATE, GROUP_TYPE_STANDARD
from ..validation import ValidationError


SPLIT_EVEN = "even"
SPLIT_CORPORATE_PERSONAL = "corporate_personal"
SPLIT_BY_CATEGORY = "by_category"
SPLIT_TYPES = (SPLIT_EVEN, SPLIT_CORPORATE_PERSONAL, SPLIT_BY_CATEGORY)

MIN_EVEN_GROUPS = 2
MAX_EVEN_GROUPS = 10

CORPORATE_GROUP_NAME = "Corporate Expenses"
PERSONAL_GROUP_NAME = "Personal Expenses"
UNCATEGORIZED_GROUP_NAME = "Uncategorized"

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class NoItemsToSplitError(ValidationError):
    """Raised when a split is requested for a tab with no line items."""

    def __init__(self, tab_id: str | None = None):
        super().__init__("No line items to split", {"tab_id": tab_id} if tab_id else {})


class SplitItem(Protocol):
    """What the engine needs from a line item (LineItem models satisfy it)."""
    id: Any
    category: Optional[str]
    created_at: Optional[datetime]


# =============================================================================
# STRATEGY VARIANTS
# =============================================================================

@dataclass(frozen=True)
class TimeWindow:
    start: time
    end: time

    def contains(self, moment: time) -> bool:
        # Inclusive start, exclusive end; start > end wraps past midnight
        if self.start <= self.end:
            return self.start <= moment < self.end
        return moment >= self.start or moment < self.end


@dataclass(frozen=True)
class CorporateRules:
    categories: frozenset[str] = frozenset()
    time_window: Optional[TimeWindow] = None
    weekdays_only: bool = False

    @property
    def has_schedule(self) -> bool:
        return self.time_window is not None or self.weekdays_only


@dataclass(frozen=True)
class PersonalRules:
    categories: frozenset[str] = frozenset()


@dataclass(frozen=True)
class EvenSplit:
    number_of_groups: int

    def __post_init__(self):
        n = self.number_of_groups
        if isinstance(n, bool) or not isinstance(n, int) or not (MIN_EVEN_GROUPS <= n <= MAX_EVEN_GROUPS):
            raise ValidationError(
                f"number_of_groups must be an integer between {MIN_EVEN_GROUPS} and {MAX_EVEN_GROUPS}",
                {"number_of_groups": f"must be an integer between {MIN_EVEN_GROUPS} and {MAX_EVEN_GROUPS}"},
            )

    @property
    def split_type(self) -> str:
        return SPLIT_EVEN


@dataclass(frozen=True)
class CorporatePersonalSplit:
    corporate: CorporateRules = field(default_factory=CorporateRules)
    personal: PersonalRules = field(default_factory=PersonalRules)

    @property
    def split_type(self) -> str:
        return SPLIT_CORPORATE_PERSONAL


@dataclass(frozen=True)
class CategorySplit:

    @property
    def split_type(self) -> str:
        return SPLIT_BY_CATEGORY


SplitStrategy = Union[EvenSplit, CorporatePersonalSplit, CategorySplit]


# =============================================================================
# PLAN
# =============================================================================

@dataclass(frozen=True)
class GroupDef:
    name: str
    group_type: str

    def to_dict(self) -> dict:
        return {"name": self.name, "type": self.group_type}


@dataclass(frozen=True)
class AllocationPlan:
    tab_id: str
    split_type: str
    group_defs: list[GroupDef]
    # (line_item_id, index into group_defs)
    assignments: list[tuple[Any, int]]

    def items_for_group(self, index: int) -> list[Any]:
        return [item_id for item_id, group_index in self.assignments if group_index == index]

    def to_dict(self) -> dict:
        return {
            "tab_id": self.tab_id,
            "split_type": self.split_type,
            "groups": [
                {**g.to_dict(), "line_item_ids": self.items_for_group(i), "items_count": len(self.items_for_group(i))}
                for i, g in enumerate(self.group_defs)
            ],
            "items_assigned": len(self.assignments),
        }


# =============================================================================
# PARSING
# =============================================================================

def parse_time(value: Any, field_name: str) -> time:
    """Parse a strict 24h "HH:MM" string."""
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be an HH:MM string", {field_name: "must be HH:MM"})
    match = _HHMM.match(value.strip())
    if not match:
        raise ValidationError(f"{field_name} must be an HH:MM string", {field_name: "must be HH:MM"})
    return time(int(match.group(1)), int(match.group(2)))


def _parse_categories(value: Any, field_name: str) -> frozenset[str]:
    if value is None:
        return frozenset()
    if not isinstance(value, list) or not all(isinstance(c, str) for c in value):
        raise ValidationError(f"{field_name} must be a list of strings", {field_name: "must be a list of strings"})
    return frozenset(c.strip() for c in value if c.strip())


def parse_corporate_personal_rules(rules: Any) -> CorporatePersonalSplit:
    if rules is None:
        rules = {}
    if not isinstance(rules, dict):
        raise ValidationError("rules must be an object", {"rules": "must be an object"})

    corporate = rules.get("corporate") or {}
    personal = rules.get("personal") or {}
    if not isinstance(corporate, dict):
        raise ValidationError("rules.corporate must be an object", {"rules.corporate": "must be an object"})
    if not isinstance(personal, dict):
        raise ValidationError("rules.personal must be an object", {"rules.personal": "must be an object"})

    errors: dict[str, str] = {}

    def collect(fn, *args):
        try:
            return fn(*args)
        except ValidationError as exc:
            errors.update(exc.details)
            return None

    corporate_categories = collect(_parse_categories, corporate.get("categories"), "rules.corporate.categories")
    personal_categories = collect(_parse_categories, personal.get("categories"), "rules.personal.categories")

    window = None
    time_range = corporate.get("time_range")
    if time_range is not None:
        if not isinstance(time_range, dict):
            errors["rules.corporate.time_range"] = "must be an object with start and end"
        else:
            start = collect(parse_time, time_range.get("start"), "rules.corporate.time_range.start")
            end = collect(parse_time, time_range.get("end"), "rules.corporate.time_range.end")
            if start is not None and end is not None:
                window = TimeWindow(start=start, end=end)

    weekdays_only = corporate.get("weekdays_only", False)
    if not isinstance(weekdays_only, bool):
        errors["rules.corporate.weekdays_only"] = "must be a boolean"

    if errors:
        raise ValidationError("Invalid corporate/personal rules", errors)

    return CorporatePersonalSplit(
        corporate=CorporateRules(
            categories=corporate_categories or frozenset(),
            time_window=window,
            weekdays_only=weekdays_only,
        ),
        personal=PersonalRules(categories=personal_categories or frozenset()),
    )


def parse_split_request(payload: Any) -> SplitStrategy:
    """
    Build a validated strategy from a split request body.

    {"split_type": "even", "number_of_groups": 3}
    {"split_type": "corporate_personal", "rules": {"corporate": {...}, "personal": {...}}}
    {"split_type": "by_category"}
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    split_type = payload.get("split_type")
    if split_type == SPLIT_EVEN:
        if payload.get("number_of_groups") is None:
            raise ValidationError("number_of_groups is required", {"number_of_groups": "is required"})
        return EvenSplit(payload["number_of_groups"])
    if split_type == SPLIT_CORPORATE_PERSONAL:
        return parse_corporate_personal_rules(payload.get("rules"))
    if split_type == SPLIT_BY_CATEGORY:
        return CategorySplit()

    raise ValidationError(
        f"split_type must be one of: {', '.join(SPLIT_TYPES)}",
        {"split_type": f"must be one of: {', '.join(SPLIT_TYPES)}"},
    )


# =============================================================================
# ALLOCATION
# =============================================================================

def category_group_name(category: str) -> str:
    """"room_service" -> "Room Service"."""
    return string.capwords(category.replace("_", " "))


def _normalized_category(item: SplitItem) -> Optional[str]:
    category = getattr(item, "category", None)
    if category is None:
        return None
    category = category.strip()
    return category or None


def is_corporate_item(item: SplitItem, strategy: CorporatePersonalSplit) -> bool:
    """
    Category first; the schedule is only consulted when categories were not decisive.
    """
    category = _normalized_category(item)
    if category is not None:
        if category in strategy.corporate.categories:
            return True
        if category in strategy.personal.categories:
            return False

    rules = strategy.corporate
    if not rules.has_schedule:
        return False

    occurred = getattr(item, "created_at", None)
    if occurred is None:
        return False
    if rules.weekdays_only and occurred.weekday() >= 5:
        return False
    if rules.time_window is not None and not rules.time_window.contains(occurred.time()):
        return False
    return True


def _allocate_even(items: list[SplitItem], strategy: EvenSplit):
    n = strategy.number_of_groups
    group_defs = [GroupDef(f"Group {i + 1}", GROUP_TYPE_STANDARD) for i in range(n)]
    assignments = [(item.id, i % n) for i, item in enumerate(items)]
    return group_defs, assignments


def _allocate_corporate_personal(items: list[SplitItem], strategy: CorporatePersonalSplit):
    group_defs = [
        GroupDef(CORPORATE_GROUP_NAME, GROUP_TYPE_CORPORATE),
        GroupDef(PERSONAL_GROUP_NAME, GROUP_TYPE_STANDARD),
    ]
    assignments = [(item.id, 0 if is_corporate_item(item, strategy) else 1) for item in items]
    return group_defs, assignments


def _allocate_by_category(items: list[SplitItem]):
    index_by_category: dict[str, int] = {}
    group_defs: list[GroupDef] = []
    for item in items:
        category = _normalized_category(item)
        if category is not None and category not in index_by_category:
            index_by_category[category] = len(group_defs)
            group_defs.append(GroupDef(category_group_name(category), GROUP_TYPE_STANDARD))

    uncategorized_index = None
    if any(_normalized_category(item) is None for item in items):
        uncategorized_index = len(group_defs)
        group_defs.append(GroupDef(UNCATEGORIZED_GROUP_NAME, GROUP_TYPE_STANDARD))

    assignments = []
    for item in items:
        category = _normalized_category(item)
        index = index_by_category[category] if category is not None else uncategorized_index
        assignments.append((item.id, index))
    return group_defs, assignments


def allocate(tab_id: str, line_items: Iterable[SplitItem], strategy: SplitStrategy) -> AllocationPlan:
    """
    Plan a split of line_items (already in tab order) under strategy.

    Raises:
        NoItemsToSplitError: line_items is empty
        TypeError: strategy is not one of the known variants
    """
    items = list(line_items)
    if not items:
        raise NoItemsToSplitError(tab_id)

    if isinstance(strategy, EvenSplit):
        group_defs, assignments = _allocate_even(items, strategy)
    elif isinstance(strategy, CorporatePersonalSplit):
        group_defs, assignments = _allocate_corporate_personal(items, strategy)
    elif isinstance(strategy, CategorySplit):
        group_defs, assignments = _allocate_by_category(items)
    else:
        raise TypeError(f"Unknown split strategy: {type(strategy).__name__}")

    return AllocationPlan(
        tab_id=tab_id,
        split_type=strategy.split_type,
        group_defs=group_defs,
        assignments=assignments,
    )
