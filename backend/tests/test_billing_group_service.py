# Overview: Pytest coverage for billing group lifecycle, splitting and deletion safety.

import pytest

from conftest import ACTOR, ORG_A, ORG_B, assign, make_group, make_invoice, make_payment, make_tab
from tabbilling.models import AuditEntry, BillingGroup, Invoice, LineItem
from tabbilling.services import billing_group_service
from tabbilling.services.allocation_service import CategorySplit, EvenSplit, NoItemsToSplitError
from tabbilling.services.billing_group_service import DeletionBlockedError
from tabbilling.validation import ConflictError, ForbiddenError, NotFoundError, ValidationError


def audit_entries(session, **filters):
    return session.query(AuditEntry).filter_by(**filters).order_by(AuditEntry.id.asc()).all()


def items_of(tab):
    return sorted(tab.line_items, key=lambda i: i.position)


class TestCreateAndUpdate:

    def test_create_records_created_entry(self, db_session, tab_a):
        group = billing_group_service.create_billing_group(
            tab_a.id, ORG_A, ACTOR, {"name": "Acme Corp", "group_type": "corporate", "po_number": "PO-1"}
        )

        assert group.tab_id == tab_a.id
        assert group.status == "active"
        entries = audit_entries(db_session, entity_id=group.id)
        assert [e.action for e in entries] == ["created"]
        assert entries[0].changes["name"] == {"from": None, "to": "Acme Corp"}

    def test_credit_group_requires_limit(self, db_session, tab_a):
        with pytest.raises(ValidationError) as exc:
            billing_group_service.create_billing_group(tab_a.id, ORG_A, ACTOR, {"name": "Tab", "group_type": "credit"})
        assert "credit_limit_cents" in exc.value.details

    def test_deposit_group_requires_amount(self, db_session, tab_a):
        with pytest.raises(ValidationError):
            billing_group_service.create_billing_group(tab_a.id, ORG_A, ACTOR, {"name": "Tab", "group_type": "deposit"})

        group = billing_group_service.create_billing_group(
            tab_a.id, ORG_A, ACTOR, {"name": "Tab", "group_type": "deposit", "deposit_amount_cents": 20000}
        )
        assert group.deposit_remaining_cents == 20000

    def test_unknown_type_rejected(self, db_session, tab_a):
        with pytest.raises(ValidationError):
            billing_group_service.create_billing_group(tab_a.id, ORG_A, ACTOR, {"name": "X", "group_type": "vip"})

    def test_void_tab_rejected(self, db_session):
        tab = make_tab(db_session, status="void")
        with pytest.raises(ConflictError):
            billing_group_service.create_billing_group(tab.id, ORG_A, ACTOR, {"name": "X"})

    def test_other_org_is_not_found(self, db_session, tab_a):
        with pytest.raises(NotFoundError):
            billing_group_service.create_billing_group(tab_a.id, ORG_B, ACTOR, {"name": "X"})

    def test_update_records_diff(self, db_session, tab_a):
        group = make_group(db_session, tab_a, name="Old")

        billing_group_service.update_billing_group(group.id, ORG_A, ACTOR, {"name": "New", "status": "suspended"})

        entries = audit_entries(db_session, entity_id=group.id, action="updated")
        assert len(entries) == 1
        assert entries[0].changes == {
            "name": {"from": "Old", "to": "New"},
            "status": {"from": "active", "to": "suspended"},
        }

    def test_update_without_change_writes_nothing(self, db_session, tab_a):
        group = make_group(db_session, tab_a, name="Same")

        billing_group_service.update_billing_group(group.id, ORG_A, ACTOR, {"name": "Same"})

        assert audit_entries(db_session, entity_id=group.id) == []

    def test_update_rejects_unknown_status(self, db_session, tab_a):
        group = make_group(db_session, tab_a)
        with pytest.raises(ValidationError):
            billing_group_service.update_billing_group(group.id, ORG_A, ACTOR, {"status": "archived"})


class TestAssignment:

    def test_assign_writes_one_entry_per_changed_item(self, db_session, tab_a):
        group = make_group(db_session, tab_a)
        burger, beer, _ = items_of(tab_a)
        assign(db_session, group, burger)

        changed = billing_group_service.assign_line_items(tab_a.id, ORG_A, ACTOR, [
            {"line_item_id": burger.id, "billing_group_id": group.id},
            {"line_item_id": beer.id, "billing_group_id": group.id},
        ])

        assert [i.id for i in changed] == [beer.id]
        entries = audit_entries(db_session, action="assigned")
        assert len(entries) == 1
        assert entries[0].entity_id == beer.id
        assert entries[0].changes == {"billing_group_id": {"from": None, "to": group.id}}

    def test_unassign_with_null_group(self, db_session, tab_a):
        group = make_group(db_session, tab_a)
        burger = items_of(tab_a)[0]
        assign(db_session, group, burger)

        billing_group_service.assign_line_items(
            tab_a.id, ORG_A, ACTOR, [{"line_item_id": burger.id, "billing_group_id": None}]
        )

        assert db_session.get(LineItem, burger.id).billing_group_id is None

    def test_group_from_another_tab_rejected(self, db_session, tab_a):
        other = make_tab(db_session, items=[{"total_cents": 100}])
        foreign_group = make_group(db_session, other)
        burger = items_of(tab_a)[0]

        with pytest.raises(ValidationError):
            billing_group_service.assign_line_items(
                tab_a.id, ORG_A, ACTOR, [{"line_item_id": burger.id, "billing_group_id": foreign_group.id}]
            )
        assert audit_entries(db_session) == []

    def test_empty_assignments_rejected(self, db_session, tab_a):
        with pytest.raises(ValidationError):
            billing_group_service.assign_line_items(tab_a.id, ORG_A, ACTOR, [])


class TestSplitting:

    def test_even_split_persists_groups_and_assignments(self, db_session, tab_a):
        result = billing_group_service.apply_split(tab_a.id, ORG_A, ACTOR, EvenSplit(2))

        assert result["message"] == "Tab split successfully"
        assert result["split_type"] == "even"
        assert result["groups_created"] == 2
        assert result["items_assigned"] == 3
        assert [(g["name"], g["items_count"]) for g in result["groups"]] == [("Group 1", 2), ("Group 2", 1)]

        group_1, group_2 = (g["id"] for g in result["groups"])
        burger, beer, parking = items_of(tab_a)
        assert (burger.billing_group_id, beer.billing_group_id, parking.billing_group_id) == (group_1, group_2, group_1)

        assert len(audit_entries(db_session, entity_type="billing_group", action="created")) == 2
        assert len(audit_entries(db_session, entity_type="line_item", action="assigned")) == 3

    def test_category_split(self, db_session, tab_a):
        result = billing_group_service.apply_split(tab_a.id, ORG_A, ACTOR, CategorySplit())

        assert [g["name"] for g in result["groups"]] == ["Food", "Drink", "Uncategorized"]
        assert [g["items_count"] for g in result["groups"]] == [1, 1, 1]

    def test_split_moves_previously_grouped_items(self, db_session, tab_a):
        old = make_group(db_session, tab_a, name="Old")
        assign(db_session, old, *items_of(tab_a))

        result = billing_group_service.apply_split(tab_a.id, ORG_A, ACTOR, EvenSplit(3))

        new_ids = {g["id"] for g in result["groups"]}
        assert all(i.billing_group_id in new_ids for i in items_of(tab_a))
        moves = audit_entries(db_session, action="assigned")
        assert all(e.changes["billing_group_id"]["from"] == old.id for e in moves)

    def test_no_items_persists_nothing(self, db_session):
        tab = make_tab(db_session)

        with pytest.raises(NoItemsToSplitError):
            billing_group_service.apply_split(tab.id, ORG_A, ACTOR, EvenSplit(2))

        assert db_session.query(BillingGroup).count() == 0
        assert audit_entries(db_session) == []

    def test_preview_persists_nothing(self, db_session, tab_a):
        plan = billing_group_service.preview_split(tab_a.id, ORG_A, EvenSplit(2))

        assert len(plan.group_defs) == 2
        assert db_session.query(BillingGroup).count() == 0
        assert audit_entries(db_session) == []

    def test_summary(self, db_session, tab_a):
        group = make_group(db_session, tab_a, name="Food", group_type="deposit", deposit_amount_cents=5000,
                           deposit_applied_cents=1200)
        burger = items_of(tab_a)[0]
        assign(db_session, group, burger)

        summary = billing_group_service.get_tab_billing_summary(tab_a.id, ORG_A)

        assert summary["items_total_cents"] == 3300
        assert summary["billing_groups"][0]["items_count"] == 1
        assert summary["billing_groups"][0]["total_cents"] == 1500
        assert summary["billing_groups"][0]["deposit_remaining_cents"] == 3800
        assert summary["unassigned"]["items_count"] == 2
        assert summary["unassigned"]["total_cents"] == 1800


class TestDeletionSafety:

    def test_paid_invoice_blocks_deletion(self, db_session, tab_a):
        invoice = make_invoice(db_session, tab_a, number="INV-1", status="sent", total_cents=100, paid_amount_cents=50)
        group = make_group(db_session, tab_a, invoice=invoice)

        check = billing_group_service.validate_deletion(group.id, ORG_A)

        assert check.can_delete is False
        assert [b.category for b in check.blockers] == ["invoice"]
        assert check.blockers[0].details == {
            "invoice_id": invoice.id,
            "invoice_number": "INV-1",
            "paid_amount_cents": 50,
        }

        with pytest.raises(DeletionBlockedError) as exc:
            billing_group_service.delete_billing_group(group.id, ORG_A, ACTOR)
        assert [b.category for b in exc.value.check.blockers] == ["invoice"]

        assert db_session.get(BillingGroup, group.id) is not None
        assert audit_entries(db_session, action="deleted") == []

    def test_force_requires_privilege(self, db_session, tab_a):
        group = make_group(db_session, tab_a)
        with pytest.raises(ForbiddenError):
            billing_group_service.delete_billing_group(group.id, ORG_A, ACTOR, force=True)
        assert db_session.get(BillingGroup, group.id) is not None

    def test_forced_deletion_records_bypassed_blockers(self, db_session, tab_a):
        invoice = make_invoice(db_session, tab_a, number="INV-2", status="paid", total_cents=50, paid_amount_cents=50)
        group = make_group(db_session, tab_a, invoice=invoice)
        group_id = group.id

        entry = billing_group_service.delete_billing_group(group_id, ORG_A, ACTOR, force=True, privileged=True)

        assert db_session.get(BillingGroup, group_id) is None
        # Non-draft invoices survive, detached
        assert db_session.get(Invoice, invoice.id) is not None
        assert entry.meta["forced"] is True
        assert [b["type"] for b in entry.meta["bypassed_blockers"]] == ["invoice"]
        assert len(audit_entries(db_session, action="deleted")) == 1

    def test_succeeded_payment_blocks_deletion(self, db_session, tab_a):
        group = make_group(db_session, tab_a)
        make_payment(db_session, tab_a, amount_cents=2500, billing_group=group)
        make_payment(db_session, tab_a, amount_cents=999, status="failed", billing_group=group)

        check = billing_group_service.validate_deletion(group.id, ORG_A)

        assert [b.category for b in check.blockers] == ["payment"]
        assert check.blockers[0].details["count"] == 1
        assert check.blockers[0].details["total_cents"] == 2500

    def test_assigned_items_block_without_target(self, db_session, tab_a):
        group = make_group(db_session, tab_a)
        assign(db_session, group, *items_of(tab_a)[:2])

        check = billing_group_service.validate_deletion(group.id, ORG_A)

        assert [b.category for b in check.blockers] == ["line_items"]
        assert [w.category for w in check.warnings] == ["unpaid_line_items"]
        assert check.warnings[0].details == {"count": 2, "total_cents": 2300}

    def test_delete_moves_items_to_target(self, db_session, tab_a):
        group = make_group(db_session, tab_a, name="Doomed")
        target = make_group(db_session, tab_a, name="Keeper")
        burger, beer, _ = items_of(tab_a)
        assign(db_session, group, burger, beer)
        before = group.to_dict()
        group_id = group.id

        entry = billing_group_service.delete_billing_group(
            group_id, ORG_A, ACTOR, move_line_items_to_group_id=target.id
        )

        assert db_session.get(BillingGroup, group_id) is None
        assert db_session.get(LineItem, burger.id).billing_group_id == target.id
        assert db_session.get(LineItem, beer.id).billing_group_id == target.id

        entries = audit_entries(db_session, entity_id=group_id)
        assert [e.action for e in entries] == ["deleted"]
        assert entry.changes["name"] == {"from": "Doomed", "to": None}
        assert entry.changes["status"] == {"from": before["status"], "to": None}
        assert sorted(entry.meta["moved_line_item_ids"]) == sorted([burger.id, beer.id])
        assert entry.meta["moved_to_group_id"] == target.id
        assert entry.meta["warnings"] == []

    def test_moving_items_is_not_warned_as_orphaning(self, db_session, tab_a):
        group = make_group(db_session, tab_a)
        target = make_group(db_session, tab_a, name="Keeper")
        assign(db_session, group, *items_of(tab_a)[:2])

        check = billing_group_service.validate_deletion(group.id, ORG_A, move_line_items_to_group_id=target.id)

        assert check.can_delete is True
        assert check.warnings == []

    def test_forced_deletion_unassigns_items(self, db_session, tab_a):
        group = make_group(db_session, tab_a)
        burger = items_of(tab_a)[0]
        assign(db_session, group, burger)

        billing_group_service.delete_billing_group(group.id, ORG_A, ACTOR, force=True, privileged=True)

        assert db_session.get(LineItem, burger.id).billing_group_id is None

    def test_force_is_recorded_even_without_blockers(self, db_session, tab_a):
        group = make_group(db_session, tab_a)

        entry = billing_group_service.delete_billing_group(group.id, ORG_A, ACTOR, force=True, privileged=True)

        assert entry.meta["forced"] is True
        assert entry.meta["bypassed_blockers"] == []

    def test_draft_invoice_warned_and_deleted(self, db_session, tab_a):
        invoice = make_invoice(db_session, tab_a, number="INV-3", status="draft", total_cents=4200)
        group = make_group(db_session, tab_a, invoice=invoice)

        check = billing_group_service.validate_deletion(group.id, ORG_A)
        assert check.can_delete is True
        assert [w.category for w in check.warnings] == ["draft_invoice"]

        entry = billing_group_service.delete_billing_group(group.id, ORG_A, ACTOR)

        assert db_session.get(Invoice, invoice.id) is None
        assert entry.meta["invoice_action"]["action"] == "deleted"
        assert "forced" not in entry.meta

    def test_target_must_be_on_same_tab(self, db_session, tab_a):
        group = make_group(db_session, tab_a)
        other = make_tab(db_session, items=[{"total_cents": 100}])
        foreign = make_group(db_session, other)

        with pytest.raises(ValidationError):
            billing_group_service.validate_deletion(group.id, ORG_A, move_line_items_to_group_id=foreign.id)

    def test_target_must_differ_from_group(self, db_session, tab_a):
        group = make_group(db_session, tab_a)

        with pytest.raises(ValidationError):
            billing_group_service.delete_billing_group(
                group.id, ORG_A, ACTOR, move_line_items_to_group_id=group.id
            )

    def test_missing_target_rejected(self, db_session, tab_a):
        group = make_group(db_session, tab_a)

        with pytest.raises(ValidationError):
            billing_group_service.validate_deletion(
                group.id, ORG_A, move_line_items_to_group_id="00000000-0000-0000-0000-000000000000"
            )

    def test_group_in_other_org_is_not_found(self, db_session):
        tab = make_tab(db_session, org_id=ORG_B)
        group = make_group(db_session, tab)

        with pytest.raises(NotFoundError):
            billing_group_service.validate_deletion(group.id, ORG_A)
        with pytest.raises(NotFoundError):
            billing_group_service.delete_billing_group(group.id, ORG_A, ACTOR)
