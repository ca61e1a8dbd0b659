# Overview: Pytest coverage for the split allocation engine (pure, no database).

from datetime import datetime, time
from types import SimpleNamespace

import pytest

from tabbilling.services.allocation_service import (
    CategorySplit,
    CorporatePersonalSplit,
    CorporateRules,
    EvenSplit,
    NoItemsToSplitError,
    PersonalRules,
    TimeWindow,
    allocate,
    category_group_name,
    parse_split_request,
)
from tabbilling.validation import ValidationError


MONDAY_10AM = datetime(2026, 3, 2, 10, 0)
MONDAY_8PM = datetime(2026, 3, 2, 20, 0)
SATURDAY_10AM = datetime(2026, 3, 7, 10, 0)


def item(item_id, category=None, created_at=MONDAY_10AM):
    return SimpleNamespace(id=item_id, category=category, created_at=created_at)


def groups_of(plan):
    """{group name: [item ids]}"""
    return {g.name: plan.items_for_group(i) for i, g in enumerate(plan.group_defs)}


class TestEvenSplit:

    def test_round_robin_by_position(self):
        plan = allocate("tab-1", [item("A"), item("B"), item("C")], EvenSplit(2))

        assert [g.name for g in plan.group_defs] == ["Group 1", "Group 2"]
        assert plan.assignments == [("A", 0), ("B", 1), ("C", 0)]

    def test_repeated_calls_are_identical(self):
        items = [item(f"i{n}") for n in range(7)]
        first = allocate("tab-1", items, EvenSplit(3))
        for _ in range(5):
            assert allocate("tab-1", items, EvenSplit(3)) == first

    def test_creates_all_groups_even_with_fewer_items(self):
        plan = allocate("tab-1", [item("A")], EvenSplit(4))

        assert len(plan.group_defs) == 4
        assert plan.assignments == [("A", 0)]
        assert all(g.group_type == "standard" for g in plan.group_defs)

    @pytest.mark.parametrize("n", [0, 1, 11, -3])
    def test_group_count_out_of_range(self, n):
        with pytest.raises(ValidationError) as exc:
            EvenSplit(n)
        assert "number_of_groups" in exc.value.details

    def test_group_count_must_be_an_integer(self):
        with pytest.raises(ValidationError):
            EvenSplit(True)
        with pytest.raises(ValidationError):
            EvenSplit("3")


class TestCategorySplit:

    def test_groups_by_category_with_uncategorized(self):
        plan = allocate("tab-1", [item("A", "food"), item("B", "drink"), item("C", None)], CategorySplit())

        assert [g.name for g in plan.group_defs] == ["Food", "Drink", "Uncategorized"]
        assert groups_of(plan) == {"Food": ["A"], "Drink": ["B"], "Uncategorized": ["C"]}

    def test_no_uncategorized_group_when_every_item_has_a_category(self):
        plan = allocate("tab-1", [item("A", "food"), item("B", "drink")], CategorySplit())

        assert [g.name for g in plan.group_defs] == ["Food", "Drink"]

    def test_blank_category_counts_as_uncategorized(self):
        plan = allocate("tab-1", [item("A", "  "), item("B", "food")], CategorySplit())

        assert [g.name for g in plan.group_defs] == ["Food", "Uncategorized"]
        assert groups_of(plan)["Uncategorized"] == ["A"]

    def test_first_seen_order_and_shared_groups(self):
        items = [item("A", "drink"), item("B", "food"), item("C", "drink")]
        plan = allocate("tab-1", items, CategorySplit())

        assert groups_of(plan) == {"Drink": ["A", "C"], "Food": ["B"]}

    def test_group_names(self):
        assert category_group_name("room_service") == "Room Service"
        assert category_group_name("MINI_bar") == "Mini Bar"


class TestCorporatePersonalSplit:

    def test_two_groups_in_fixed_order(self):
        plan = allocate("tab-1", [item("A")], CorporatePersonalSplit())

        assert [(g.name, g.group_type) for g in plan.group_defs] == [
            ("Corporate Expenses", "corporate"),
            ("Personal Expenses", "standard"),
        ]
        # No rules configured: everything is personal
        assert plan.assignments == [("A", 1)]

    def test_category_rules(self):
        strategy = CorporatePersonalSplit(
            corporate=CorporateRules(categories=frozenset({"lodging"})),
            personal=PersonalRules(categories=frozenset({"minibar"})),
        )
        plan = allocate("tab-1", [item("A", "lodging"), item("B", "minibar"), item("C", "food")], strategy)

        assert groups_of(plan) == {"Corporate Expenses": ["A"], "Personal Expenses": ["B", "C"]}

    def test_personal_category_wins_over_schedule(self):
        strategy = CorporatePersonalSplit(
            corporate=CorporateRules(time_window=TimeWindow(time(9), time(17)), weekdays_only=True),
            personal=PersonalRules(categories=frozenset({"minibar"})),
        )
        plan = allocate("tab-1", [item("A", "minibar", MONDAY_10AM), item("B", "food", MONDAY_10AM)], strategy)

        assert groups_of(plan) == {"Corporate Expenses": ["B"], "Personal Expenses": ["A"]}

    def test_time_window_and_weekdays(self):
        strategy = CorporatePersonalSplit(
            corporate=CorporateRules(time_window=TimeWindow(time(9), time(17)), weekdays_only=True),
        )
        items = [
            item("in-hours", created_at=MONDAY_10AM),
            item("evening", created_at=MONDAY_8PM),
            item("weekend", created_at=SATURDAY_10AM),
            item("no-time", created_at=None),
        ]
        plan = allocate("tab-1", items, strategy)

        assert groups_of(plan) == {
            "Corporate Expenses": ["in-hours"],
            "Personal Expenses": ["evening", "weekend", "no-time"],
        }

    def test_window_bounds_inclusive_start_exclusive_end(self):
        window = TimeWindow(time(9), time(17))
        assert window.contains(time(9, 0))
        assert window.contains(time(16, 59))
        assert not window.contains(time(17, 0))

    def test_window_wrapping_past_midnight(self):
        window = TimeWindow(time(22), time(2))
        assert window.contains(time(23, 30))
        assert window.contains(time(1, 0))
        assert not window.contains(time(2, 0))
        assert not window.contains(time(12, 0))


class TestAllocateEdges:

    def test_no_items(self):
        with pytest.raises(NoItemsToSplitError):
            allocate("tab-1", [], EvenSplit(2))

    def test_unknown_strategy(self):
        with pytest.raises(TypeError):
            allocate("tab-1", [item("A")], object())

    @pytest.mark.parametrize("strategy", [EvenSplit(3), CategorySplit(), CorporatePersonalSplit()])
    def test_every_item_assigned_exactly_once(self, strategy):
        items = [item(f"i{n}", ["food", None, "drink"][n % 3]) for n in range(10)]
        plan = allocate("tab-1", items, strategy)

        assigned = [item_id for item_id, _ in plan.assignments]
        assert sorted(assigned) == sorted(i.id for i in items)
        assert len(set(assigned)) == len(assigned)
        assert all(0 <= idx < len(plan.group_defs) for _, idx in plan.assignments)


class TestParseSplitRequest:

    def test_even(self):
        assert parse_split_request({"split_type": "even", "number_of_groups": 3}) == EvenSplit(3)

    def test_even_requires_group_count(self):
        with pytest.raises(ValidationError) as exc:
            parse_split_request({"split_type": "even"})
        assert exc.value.details == {"number_of_groups": "is required"}

    def test_unknown_split_type(self):
        with pytest.raises(ValidationError) as exc:
            parse_split_request({"split_type": "random"})
        assert "split_type" in exc.value.details

    def test_corporate_personal_rules(self):
        strategy = parse_split_request({
            "split_type": "corporate_personal",
            "rules": {
                "corporate": {
                    "categories": ["lodging"],
                    "time_range": {"start": "09:00", "end": "17:00"},
                    "weekdays_only": True,
                },
                "personal": {"categories": ["minibar"]},
            },
        })

        assert strategy.corporate.categories == frozenset({"lodging"})
        assert strategy.corporate.time_window == TimeWindow(time(9), time(17))
        assert strategy.corporate.weekdays_only is True
        assert strategy.personal.categories == frozenset({"minibar"})

    def test_malformed_times_are_rejected_before_allocation(self):
        with pytest.raises(ValidationError) as exc:
            parse_split_request({
                "split_type": "corporate_personal",
                "rules": {"corporate": {"time_range": {"start": "9am", "end": "24:00"}}},
            })
        assert set(exc.value.details) == {
            "rules.corporate.time_range.start",
            "rules.corporate.time_range.end",
        }

    def test_by_category(self):
        assert parse_split_request({"split_type": "by_category"}) == CategorySplit()
