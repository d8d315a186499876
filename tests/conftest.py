"""Shared test fixtures for the billing test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: two users, one already linked to a Creem customer
- login: log a user in on the test client
- post_webhook: sign and POST a webhook payload
"""

import json

import pytest

from app import create_app
from app.extensions import db as _db
from app.models.user import User
from app.services.webhook_service import SIGNATURE_HEADER, compute_signature

WEBHOOK_URL = "/api/billing/webhooks/creem"
WEBHOOK_SECRET = "whsec_test_fake"  # matches TestConfig


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def seed_data(app, db_session):
    """Seed two users: `alice` (no customer yet) and `bob` (linked to cust_bob).

    Returns plain ids so tests can use them after the session is rolled back.
    """
    alice = User(email="alice@example.com", name="Alice")
    bob = User(
        email="bob@example.com",
        name="Bob",
        payment_provider_customer_id="cust_bob",
    )
    _db.session.add_all([alice, bob])
    _db.session.commit()

    return {
        "alice_id": alice.id,
        "bob_id": bob.id,
        "bob_customer_id": "cust_bob",
    }


@pytest.fixture
def login(client):
    """Return a function that logs a user id in on the test client."""

    def _login(user_id):
        with client.session_transaction() as sess:
            sess["_user_id"] = user_id
            sess["_fresh"] = True

    return _login


def sign(body, secret=WEBHOOK_SECRET):
    return compute_signature(body, secret)


@pytest.fixture
def post_webhook(client):
    """Return a function that POSTs a webhook body with a valid signature.

    Accepts a dict (serialised once, and that exact text is signed) or raw
    bytes/str. Pass signature=... to override the header value.
    """

    def _post(payload, signature=None):
        body = json.dumps(payload) if isinstance(payload, dict) else payload
        if isinstance(body, str):
            body = body.encode("utf-8")
        headers = {SIGNATURE_HEADER: signature if signature is not None else sign(body)}
        return client.post(
            WEBHOOK_URL,
            data=body,
            content_type="application/json",
            headers=headers,
        )

    return _post


# --- payload builders ---

def subscription_object(subscription_id="sub_1", customer="cust_bob",
                        product="prod_premium_monthly_sub", status="active",
                        **extra):
    obj = {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "product": product,
        "status": status,
        "current_period_start_date": "2026-01-01T00:00:00Z",
        "current_period_end_date": "2026-02-01T00:00:00Z",
    }
    obj.update(extra)
    return obj


def envelope(event_id, event_type, obj):
    return {"id": event_id, "eventType": event_type, "object": obj}


def checkout_object(user_id, checkout_id="ch_1", customer="cust_new",
                    payment_mode="subscription", tier_id="premium",
                    subscription=None, order=None):
    obj = {
        "id": checkout_id,
        "object": "checkout",
        "customer": {"id": customer, "email": "someone@example.com"},
        "metadata": {
            "userId": user_id,
            "tierId": tier_id,
            "paymentMode": payment_mode,
        },
    }
    if subscription is not None:
        obj["subscription"] = subscription
    if order is not None:
        obj["order"] = order
    return obj
