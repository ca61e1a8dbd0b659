"""
Pytest fixtures for tab billing backend tests.

Provides test database setup, a seeded tab with line items, helpers to attach
invoices and payments, and identity headers for the test client.
"""

from datetime import datetime

import pytest
from tabbilling import create_app
from tabbilling.config import TestConfig
from tabbilling.extensions import db
from tabbilling.models import BillingGroup, Invoice, LineItem, Payment, Tab


ORG_A = "org-acme"
ORG_B = "org-beta"
ACTOR = "user-alice"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema (Core deletes bypass the audit immutability listeners)
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


def make_tab(session, *, org_id=ORG_A, items=(), status="open", **fields) -> Tab:
    """
    Create a tab with line items.

    items: iterable of dicts with description, total_cents, category, created_at
    (positions are assigned in order, starting at 1).
    """
    total = sum(i.get("total_cents", 0) for i in items)
    tab = Tab(org_id=org_id, status=status, subtotal_cents=total, total_cents=total, meta={}, **fields)
    session.add(tab)
    session.flush()

    for position, spec in enumerate(items, start=1):
        session.add(LineItem(
            tab_id=tab.id,
            position=position,
            description=spec.get("description", f"Item {position}"),
            quantity=1,
            unit_price_cents=spec.get("total_cents", 0),
            total_cents=spec.get("total_cents", 0),
            category=spec.get("category"),
            created_at=spec.get("created_at", datetime(2026, 3, 2, 12, 0)),
            billing_group_id=spec.get("billing_group_id"),
        ))
    session.commit()
    return tab


def make_group(session, tab, *, name="Group", invoice=None, **fields) -> BillingGroup:
    group = BillingGroup(tab_id=tab.id, name=name, **fields)
    if invoice is not None:
        group.invoice = invoice
    session.add(group)
    session.commit()
    return group


def make_invoice(session, tab, *, number, status="draft", total_cents=0, paid_amount_cents=0) -> Invoice:
    invoice = Invoice(
        tab_id=tab.id,
        invoice_number=number,
        status=status,
        total_cents=total_cents,
        paid_amount_cents=paid_amount_cents,
    )
    session.add(invoice)
    session.commit()
    return invoice


def make_payment(session, tab, *, amount_cents, status="succeeded", billing_group=None, **fields) -> Payment:
    payment = Payment(
        tab_id=tab.id,
        billing_group_id=billing_group.id if billing_group is not None else None,
        amount_cents=amount_cents,
        status=status,
        **fields,
    )
    session.add(payment)
    session.commit()
    return payment


def assign(session, group, *items):
    for item in items:
        item.billing_group_id = group.id
    session.commit()


@pytest.fixture(scope='function')
def tab_a(db_session):
    """Open tab in Org A with three items: food, drink, uncategorized."""
    return make_tab(
        db_session,
        items=[
            {"description": "Burger", "total_cents": 1500, "category": "food"},
            {"description": "Beer", "total_cents": 800, "category": "drink"},
            {"description": "Parking", "total_cents": 1000, "category": None},
        ],
        customer_name="Dana",
    )


@pytest.fixture(scope='function')
def headers():
    """Identity headers for an ordinary staff member in Org A."""
    return {"X-Actor-Id": ACTOR, "X-Org-Id": ORG_A, "X-Actor-Role": "staff"}


@pytest.fixture(scope='function')
def admin_headers():
    """Identity headers for a privileged actor in Org A."""
    return {"X-Actor-Id": "user-root", "X-Org-Id": ORG_A, "X-Actor-Role": "admin"}
