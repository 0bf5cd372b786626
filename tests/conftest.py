from decimal import Decimal
from types import SimpleNamespace

import pytest

from quoteledger import create_app
from quoteledger.extensions import db
from quoteledger.lifecycle import create_document
from quoteledger.models import ROLE_ACCOUNTANT, ROLE_ADMIN, ROLE_CLIENT, ROLE_STAFF, Client, User
from quoteledger.seed import create_business

PASSWORD = "correct-horse"

# The worked example: 2 x 50.00 + 1 x 30.00 at 20% VAT -> 130.00 / 26.00 / 156.00
EXAMPLE_ITEMS = [
    {"description": "Copper pipe", "quantity": Decimal("2"), "unit_price": Decimal("50.00")},
    {"description": "Fitting labour", "item_type": "labour", "quantity": Decimal("1"), "unit_price": Decimal("30.00")},
]


def _user(username, role, *, business=None, client=None):
    user = User(
        username=username,
        role=role,
        is_active=True,
        business_id=business.id if business else None,
        client_id=client.id if client else None,
    )
    user.set_password(PASSWORD)
    db.session.add(user)
    return user


def build_world() -> SimpleNamespace:
    """Two businesses, a client for each, and a user per role."""
    business = create_business("Acme Plumbing", default_vat_rate=Decimal("20"))
    other_business = create_business("Rival Roofing", quote_prefix="RQ", invoice_prefix="RINV")

    client = Client(business_id=business.id, name="Alice Homeowner", email="alice@example.com")
    other_client = Client(business_id=business.id, name="Bob Builder", email="bob@example.com")
    rival_client = Client(business_id=other_business.id, name="Carol Rival")
    db.session.add_all([client, other_client, rival_client])
    db.session.flush()

    world = SimpleNamespace(
        business=business,
        other_business=other_business,
        client=client,
        other_client=other_client,
        rival_client=rival_client,
        admin=_user("admin", ROLE_ADMIN),
        staff=_user("staff", ROLE_STAFF, business=business),
        rival_staff=_user("rival-staff", ROLE_STAFF, business=other_business),
        accountant=_user("accountant", ROLE_ACCOUNTANT, business=business),
        client_user=_user("alice", ROLE_CLIENT, client=client),
        other_client_user=_user("bob", ROLE_CLIENT, client=other_client),
    )
    db.session.commit()
    return world


@pytest.fixture
def app():
    app = create_app("config.TestingConfig")
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ctx(app):
    """App context for tests that drive the engine directly."""
    with app.app_context():
        yield
        db.session.rollback()


@pytest.fixture
def world(ctx):
    return build_world()


@pytest.fixture
def make_document(world):
    def _make(doc_type="quote", items=None, **kwargs):
        kwargs.setdefault("vat_rate", Decimal("20"))
        document = create_document(
            business=kwargs.pop("business", world.business),
            doc_type=doc_type,
            client_id=kwargs.pop("client_id", world.client.id),
            line_items=items if items is not None else EXAMPLE_ITEMS,
            created_by_id=world.staff.id,
            **kwargs,
        )
        db.session.flush()
        return document

    return _make


# ---------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------
@pytest.fixture
def ids(app):
    """Same world as above, but only ids: each HTTP request runs in its own app context."""
    with app.app_context():
        w = build_world()
        return SimpleNamespace(
            business=w.business.id,
            other_business=w.other_business.id,
            client=w.client.id,
            other_client=w.other_client.id,
            rival_client=w.rival_client.id,
        )


@pytest.fixture
def login(app):
    """login("staff") -> a test client with an authenticated session for that user."""

    def _login(username):
        http = app.test_client()
        resp = http.post("/auth/login", json={"username": username, "password": PASSWORD})
        assert resp.status_code == 200, resp.get_json()
        return http

    return _login


def example_payload(client_id, doc_type="quote", **extra):
    payload = {
        "doc_type": doc_type,
        "client_id": client_id,
        "vat_rate": "20",
        "line_items": [
            {"description": "Copper pipe", "quantity": 2, "unit_price": "50.00"},
            {"description": "Fitting labour", "item_type": "labour", "quantity": 1, "unit_price": "30.00"},
        ],
    }
    payload.update(extra)
    return payload
