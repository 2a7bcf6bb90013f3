# tests/conftest.py
import os
import sys
from datetime import datetime

import pytest

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from quoteflow import create_app, db  # noqa: E402
from quoteflow.models.user import User  # noqa: E402
from quoteflow.services import workflow  # noqa: E402

T0 = datetime(2026, 3, 1, 9, 0, 0)

ITEMS = [
    {"description": "Consulting", "quantity": 2, "unit_price": "100", "tax_rate": 10},
]

SEQUENTIAL_STEPS = [
    {"step_index": 0, "required_roles": ["manager"]},
    {"step_index": 1, "required_roles": ["finance"]},
]

PARALLEL_STEPS = [
    {"step_index": 0, "required_roles": ["manager"]},
    {"step_index": 0, "required_roles": ["finance"]},
]

USERS = [
    ("admin", "admin"),
    ("sales", "sales"),
    ("manager", "manager"),
    ("finance", "finance"),
    ("legal", "legal"),
    ("viewer", "viewer"),
    ("scheduler", "scheduler"),
]


@pytest.fixture
def app(tmp_path):
    # :memory: だと接続が1本に固定されるため一時ファイルを使う
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'test.db'}",
    })
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def users(app):
    for login_id, roles in USERS:
        db.session.add(User(login_id=login_id, display_name=login_id.title(), roles=roles))
    db.session.commit()
    return {u.login_id: u.id for u in User.query.all()}


@pytest.fixture
def draft(app, users):
    """A Draft quotation with one line (2 x 100, 10% tax)."""
    result = workflow.create_quotation("Website redesign", items=ITEMS, actor_id=users["sales"], now=T0)
    return result.quotation


@pytest.fixture
def pending(draft, users):
    """Quotation submitted against a two-step sequential chain."""
    result = workflow.submit_for_approval(
        draft.id, SEQUENTIAL_STEPS, actor_id=users["sales"], expected_version=draft.version, now=T0
    )
    return result.quotation, result.chain


@pytest.fixture
def approved(pending, users):
    quotation, chain = pending
    workflow.submit_approval_decision(chain.id, 0, users["manager"], "approve", now=T0)
    result = workflow.submit_approval_decision(chain.id, 1, users["finance"], "approve", now=T0)
    return result.quotation


@pytest.fixture
def sent(approved, users):
    result = workflow.send(approved.id, actor_id=users["sales"], expected_version=approved.version, now=T0)
    return result.quotation
