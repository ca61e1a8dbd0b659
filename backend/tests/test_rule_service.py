# Overview: Pytest coverage for billing group rules; condition matching, CRUD and auto-assignment.

from datetime import datetime
from types import SimpleNamespace

import pytest

from conftest import ACTOR, ORG_A, ORG_B, make_group, make_tab
from tabbilling.models import AuditEntry, BillingGroupRule, LineItem
from tabbilling.services import billing_group_service, rule_service
from tabbilling.validation import ConflictError, NotFoundError, ValidationError


MONDAY_10AM = datetime(2026, 3, 2, 10, 0)
MONDAY_8PM = datetime(2026, 3, 2, 20, 0)
SUNDAY_10AM = datetime(2026, 3, 1, 10, 0)
CREATED = datetime(2026, 1, 1, 9, 0)


def item(item_id, category=None, total_cents=1000, created_at=MONDAY_10AM):
    return SimpleNamespace(id=item_id, category=category, total_cents=total_cents, created_at=created_at)


def rule(rule_id, group_id, priority=100, conditions=None, action="auto_assign", created_at=CREATED):
    return SimpleNamespace(
        id=rule_id,
        billing_group_id=group_id,
        priority=priority,
        conditions=conditions or {},
        action=action,
        created_at=created_at,
    )


def matched_rule(matches, item_id):
    match = matches[item_id]
    return match.rule_id if match is not None else None


class TestConditions:

    def test_empty_conditions_match_everything(self):
        assert rule_service.parse_rule_conditions({}).matches(item("A"))
        assert rule_service.parse_rule_conditions(None).matches(item("A", created_at=None))

    def test_categories(self):
        conditions = rule_service.parse_rule_conditions({"categories": ["food", " drink "]})

        assert conditions.matches(item("A", "drink"))
        assert not conditions.matches(item("B", "lodging"))
        assert not conditions.matches(item("C", None))

    def test_amount_bounds_are_inclusive(self):
        conditions = rule_service.parse_rule_conditions({"amount": {"min_cents": 500, "max_cents": 1000}})

        assert conditions.matches(item("A", total_cents=500))
        assert conditions.matches(item("B", total_cents=1000))
        assert not conditions.matches(item("C", total_cents=1001))
        assert not conditions.matches(item("D", total_cents=499))

    def test_time_window_uses_item_creation_time(self):
        conditions = rule_service.parse_rule_conditions({"time": {"start": "09:00", "end": "17:00"}})

        assert conditions.matches(item("A", created_at=MONDAY_10AM))
        assert not conditions.matches(item("B", created_at=MONDAY_8PM))
        assert not conditions.matches(item("C", created_at=None))

    def test_days_of_week_count_from_sunday(self):
        conditions = rule_service.parse_rule_conditions({"days_of_week": [0]})

        assert conditions.matches(item("A", created_at=SUNDAY_10AM))
        assert not conditions.matches(item("B", created_at=MONDAY_10AM))

    def test_all_conditions_must_match(self):
        conditions = rule_service.parse_rule_conditions(
            {"categories": ["food"], "amount": {"max_cents": 2000}, "days_of_week": [1, 2, 3, 4, 5]}
        )

        assert conditions.matches(item("A", "food", 1500, MONDAY_10AM))
        assert not conditions.matches(item("B", "food", 2500, MONDAY_10AM))
        assert not conditions.matches(item("C", "food", 1500, SUNDAY_10AM))

    def test_errors_are_collected_per_field(self):
        with pytest.raises(ValidationError) as exc:
            rule_service.parse_rule_conditions({
                "categories": "food",
                "amount": {"min_cents": -1},
                "time": {"start": "25:00", "end": "17:00"},
                "days_of_week": [7],
                "metadata": {},
            })

        assert set(exc.value.details) == {
            "conditions.categories",
            "conditions.amount.min_cents",
            "conditions.time.start",
            "conditions.days_of_week",
            "conditions.metadata",
        }

    def test_min_above_max_is_rejected(self):
        with pytest.raises(ValidationError) as exc:
            rule_service.parse_rule_conditions({"amount": {"min_cents": 10, "max_cents": 5}})
        assert "conditions.amount" in exc.value.details

    def test_normalized_form(self):
        conditions = rule_service.parse_rule_conditions(
            {"categories": ["b", "a"], "time": {"start": "22:00", "end": "02:00"}, "days_of_week": [5, 0]}
        )

        assert conditions.to_dict() == {
            "categories": ["a", "b"],
            "time": {"start": "22:00", "end": "02:00"},
            "days_of_week": [0, 5],
        }


class TestMatching:

    def test_lowest_priority_number_wins(self):
        rules = [
            rule("broad", "g-personal", priority=50),
            rule("food", "g-corp", priority=10, conditions={"categories": ["food"]}),
        ]

        matches = rule_service.match_line_items([item("A", "food"), item("B", "drink")], rules)

        assert matched_rule(matches, "A") == "food"
        assert matches["A"].billing_group_id == "g-corp"
        assert matched_rule(matches, "B") == "broad"

    def test_equal_priority_falls_back_to_creation_order(self):
        rules = [
            rule("later", "g-2", created_at=datetime(2026, 1, 2)),
            rule("earlier", "g-1", created_at=datetime(2026, 1, 1)),
        ]

        matches = rule_service.match_line_items([item("A")], rules)

        assert matched_rule(matches, "A") == "earlier"

    def test_unmatched_items_map_to_none(self):
        rules = [rule("food", "g-1", conditions={"categories": ["food"]})]

        matches = rule_service.match_line_items([item("A", "drink")], rules)

        assert matches == {"A": None}


class TestRuleCrud:

    def test_create_defaults_and_audit(self, db_session, tab_a):
        group = make_group(db_session, tab_a)

        created = rule_service.create_rule(
            group.id, ORG_A, ACTOR, {"name": "Food", "conditions": {"categories": ["food"]}}
        )

        assert created.priority == 100
        assert created.action == "auto_assign"
        assert created.is_active is True
        assert created.conditions == {"categories": ["food"]}
        entry = db_session.query(AuditEntry).filter_by(entity_id=created.id).one()
        assert entry.entity_type == "billing_group_rule"
        assert entry.action == "created"
        assert entry.meta == {"billing_group_id": group.id, "tab_id": tab_a.id}

    @pytest.mark.parametrize("payload, field", [
        ({}, "name"),
        ({"name": "R", "priority": 0}, "priority"),
        ({"name": "R", "priority": 1001}, "priority"),
        ({"name": "R", "action": "archive"}, "action"),
        ({"name": "R", "conditions": {"days_of_week": ["mon"]}}, "conditions.days_of_week"),
        ({"name": "R", "billing_group_id": "other"}, "billing_group_id"),
    ])
    def test_create_rejects_bad_payload(self, db_session, tab_a, payload, field):
        group = make_group(db_session, tab_a)

        with pytest.raises(ValidationError) as exc:
            rule_service.create_rule(group.id, ORG_A, ACTOR, payload)

        assert field in exc.value.details
        assert db_session.query(BillingGroupRule).count() == 0

    def test_other_org_cannot_see_rules(self, db_session, tab_a):
        group = make_group(db_session, tab_a)
        rule_service.create_rule(group.id, ORG_A, ACTOR, {"name": "R"})

        with pytest.raises(NotFoundError):
            rule_service.list_rules(group.id, ORG_B)

    def test_list_is_priority_ordered(self, db_session, tab_a):
        group = make_group(db_session, tab_a)
        rule_service.create_rule(group.id, ORG_A, ACTOR, {"name": "Late", "priority": 500})
        rule_service.create_rule(group.id, ORG_A, ACTOR, {"name": "Early", "priority": 5})
        rule_service.create_rule(group.id, ORG_A, ACTOR, {"name": "Off", "priority": 1, "is_active": False})

        assert [r.name for r in rule_service.list_rules(group.id, ORG_A)] == ["Off", "Early", "Late"]
        assert [r.name for r in rule_service.list_rules(group.id, ORG_A, include_inactive=False)] == ["Early", "Late"]

    def test_update_records_diff(self, db_session, tab_a):
        group = make_group(db_session, tab_a)
        created = rule_service.create_rule(group.id, ORG_A, ACTOR, {"name": "R"})

        updated = rule_service.update_rule(group.id, created.id, ORG_A, ACTOR, {"priority": 20, "name": "R"})

        assert updated.priority == 20
        entry = db_session.query(AuditEntry).filter_by(entity_id=created.id, action="updated").one()
        assert entry.changes == {"priority": {"from": 100, "to": 20}}

    def test_delete_rule(self, db_session, tab_a):
        group = make_group(db_session, tab_a)
        created = rule_service.create_rule(group.id, ORG_A, ACTOR, {"name": "R"})
        rule_id = created.id

        entry = rule_service.delete_rule(group.id, rule_id, ORG_A, ACTOR)

        assert entry.action == "deleted"
        assert entry.changes["name"] == {"from": "R", "to": None}
        assert db_session.get(BillingGroupRule, rule_id) is None
        with pytest.raises(NotFoundError):
            rule_service.delete_rule(group.id, rule_id, ORG_A, ACTOR)

    def test_rules_go_with_their_group(self, db_session, tab_a):
        group = make_group(db_session, tab_a)
        created = rule_service.create_rule(group.id, ORG_A, ACTOR, {"name": "R"})
        rule_id = created.id

        entry = billing_group_service.delete_billing_group(group.id, ORG_A, ACTOR)

        assert db_session.get(BillingGroupRule, rule_id) is None
        assert entry.meta["deleted_rule_ids"] == [rule_id]

    def test_void_tab_rejects_new_rules(self, db_session):
        tab = make_tab(db_session, status="void")
        group = make_group(db_session, tab)

        with pytest.raises(ConflictError):
            rule_service.create_rule(group.id, ORG_A, ACTOR, {"name": "R"})


class TestAutoAssign:

    def _groups(self, session, tab):
        corporate = make_group(session, tab, name="Corporate", group_type="corporate")
        personal = make_group(session, tab, name="Personal")
        return corporate, personal

    def test_assigns_by_priority_and_audits_rule(self, db_session, tab_a):
        corporate, personal = self._groups(db_session, tab_a)
        food = rule_service.create_rule(
            corporate.id, ORG_A, ACTOR, {"name": "Food", "priority": 10, "conditions": {"categories": ["food"]}}
        )
        rule_service.create_rule(personal.id, ORG_A, ACTOR, {"name": "Everything else", "priority": 900})

        result = rule_service.auto_assign_line_items(tab_a.id, ORG_A, ACTOR)

        assert result["items_assigned"] == 3
        assert result["unmatched"] == []
        by_description = {i.description: i.billing_group_id for i in db_session.query(LineItem).all()}
        assert by_description == {"Burger": corporate.id, "Beer": personal.id, "Parking": personal.id}

        burger = db_session.query(LineItem).filter_by(description="Burger").one()
        entry = db_session.query(AuditEntry).filter_by(entity_id=burger.id, action="assigned").one()
        assert entry.meta == {"tab_id": tab_a.id, "rule_id": food.id}
        assert entry.changes == {"billing_group_id": {"from": None, "to": corporate.id}}

    def test_unmatched_items_stay_unassigned(self, db_session, tab_a):
        corporate, _ = self._groups(db_session, tab_a)
        rule_service.create_rule(corporate.id, ORG_A, ACTOR, {"name": "Food", "conditions": {"categories": ["food"]}})

        result = rule_service.auto_assign_line_items(tab_a.id, ORG_A, ACTOR)

        assert result["items_assigned"] == 1
        assert len(result["unmatched"]) == 2
        assert db_session.query(LineItem).filter(LineItem.billing_group_id.is_(None)).count() == 2

    def test_non_assigning_action_holds_the_item(self, db_session, tab_a):
        corporate, personal = self._groups(db_session, tab_a)
        rule_service.create_rule(
            corporate.id, ORG_A, ACTOR,
            {"name": "Big spend", "priority": 1, "action": "require_approval", "conditions": {"amount": {"min_cents": 1200}}},
        )
        rule_service.create_rule(personal.id, ORG_A, ACTOR, {"name": "Rest", "priority": 50})

        result = rule_service.auto_assign_line_items(tab_a.id, ORG_A, ACTOR)

        burger = db_session.query(LineItem).filter_by(description="Burger").one()
        assert [h["line_item_id"] for h in result["held"]] == [burger.id]
        assert result["held"][0]["action"] == "require_approval"
        assert burger.billing_group_id is None
        assert result["items_assigned"] == 2

    def test_inactive_rules_and_closed_groups_are_ignored(self, db_session, tab_a):
        corporate, personal = self._groups(db_session, tab_a)
        rule_service.create_rule(corporate.id, ORG_A, ACTOR, {"name": "Off", "priority": 1, "is_active": False})
        closed = make_group(db_session, tab_a, name="Closed", status="closed")
        rule_service.create_rule(closed.id, ORG_A, ACTOR, {"name": "Closed", "priority": 2})
        rule_service.create_rule(personal.id, ORG_A, ACTOR, {"name": "Rest", "priority": 3})

        rule_service.auto_assign_line_items(tab_a.id, ORG_A, ACTOR)

        assert {i.billing_group_id for i in db_session.query(LineItem).all()} == {personal.id}

    def test_assigned_items_are_skipped_unless_asked(self, db_session, tab_a):
        corporate, personal = self._groups(db_session, tab_a)
        billing_group_service.assign_line_items(
            tab_a.id, ORG_A, ACTOR,
            [{"line_item_id": i.id, "billing_group_id": personal.id} for i in tab_a.line_items],
        )
        rule_service.create_rule(corporate.id, ORG_A, ACTOR, {"name": "All"})

        assert rule_service.auto_assign_line_items(tab_a.id, ORG_A, ACTOR)["items_assigned"] == 0

        result = rule_service.auto_assign_line_items(tab_a.id, ORG_A, ACTOR, only_unassigned=False)
        assert result["items_assigned"] == 3
        assert {i.billing_group_id for i in db_session.query(LineItem).all()} == {corporate.id}

    def test_preview_persists_nothing(self, db_session, tab_a):
        corporate, _ = self._groups(db_session, tab_a)
        rule_service.create_rule(corporate.id, ORG_A, ACTOR, {"name": "All"})

        preview = rule_service.preview_auto_assign(tab_a.id, ORG_A)

        assert len(preview["assignments"]) == 3
        assert db_session.query(LineItem).filter(LineItem.billing_group_id.isnot(None)).count() == 0
        assert db_session.query(AuditEntry).filter_by(action="assigned").count() == 0

    def test_void_tab_is_conflict(self, db_session):
        tab = make_tab(db_session, status="void", items=[{"total_cents": 100}])

        with pytest.raises(ConflictError):
            rule_service.auto_assign_line_items(tab.id, ORG_A, ACTOR)
