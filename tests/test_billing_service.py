"""Tests for the billing repository and credit service.

Covers:
- Authoritative subscription selection (active/trialing preferred, recency)
- Anomaly logging for multiple active subscriptions
- Upsert semantics for subscriptions and payments
- Ledger insert-if-absent
- Credit balance init / add / deduct
"""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from app.errors import InsufficientCredits
from app.models.billing import Subscription
from app.models.user import User
from app.models.webhook_event import WebhookEvent
from app.services import credit_service
from app.services.billing_service import BillingRepository


def _add_sub(session, user_id, subscription_id, status, created_at):
    sub = Subscription(
        user_id=user_id,
        customer_id="cust_bob",
        subscription_id=subscription_id,
        product_id="premium",
        status=status,
        created_at=created_at,
    )
    session.add(sub)
    session.commit()
    return sub


class TestUserSubscription:

    def test_none_without_rows(self, db_session, seed_data):
        assert BillingRepository(db_session).get_user_subscription(seed_data["bob_id"]) is None

    def test_active_preferred_over_newer_canceled(self, db_session, seed_data):
        now = datetime.now(timezone.utc)
        _add_sub(db_session, seed_data["bob_id"], "sub_old_active", "active", now - timedelta(days=30))
        _add_sub(db_session, seed_data["bob_id"], "sub_new_canceled", "canceled", now)

        sub = BillingRepository(db_session).get_user_subscription(seed_data["bob_id"])
        assert sub.subscription_id == "sub_old_active"

    def test_trialing_counts_as_active(self, db_session, seed_data):
        now = datetime.now(timezone.utc)
        _add_sub(db_session, seed_data["bob_id"], "sub_trial", "trialing", now - timedelta(days=3))
        _add_sub(db_session, seed_data["bob_id"], "sub_due", "past_due", now)

        sub = BillingRepository(db_session).get_user_subscription(seed_data["bob_id"])
        assert sub.subscription_id == "sub_trial"

    def test_most_recent_when_none_active(self, db_session, seed_data):
        now = datetime.now(timezone.utc)
        _add_sub(db_session, seed_data["bob_id"], "sub_a", "canceled", now - timedelta(days=60))
        _add_sub(db_session, seed_data["bob_id"], "sub_b", "past_due", now - timedelta(days=1))

        sub = BillingRepository(db_session).get_user_subscription(seed_data["bob_id"])
        assert sub.subscription_id == "sub_b"

    def test_multiple_active_logs_warning(self, db_session, seed_data, caplog):
        now = datetime.now(timezone.utc)
        _add_sub(db_session, seed_data["bob_id"], "sub_1", "active", now - timedelta(days=10))
        _add_sub(db_session, seed_data["bob_id"], "sub_2", "active", now)

        with caplog.at_level(logging.WARNING, logger="app.services.billing_service"):
            sub = BillingRepository(db_session).get_user_subscription(seed_data["bob_id"])

        assert sub.subscription_id == "sub_2"
        assert "data consistency" in caplog.text
        # Anomaly is reported, not corrected.
        assert Subscription.query.filter_by(status="active").count() == 2


class TestRepositoryWrites:

    def test_upsert_subscription_is_keyed_by_subscription_id(self, db_session, seed_data):
        repo = BillingRepository(db_session)
        repo.upsert_subscription(seed_data["bob_id"], "cust_bob", "sub_1", "premium", "active")
        repo.upsert_subscription(
            seed_data["bob_id"], "cust_bob", "sub_1", "premium", "canceled",
            canceled_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        )
        db_session.commit()

        assert Subscription.query.count() == 1
        assert Subscription.query.one().status == "canceled"

    def test_upsert_subscription_keeps_periods_when_absent(self, db_session, seed_data):
        repo = BillingRepository(db_session)
        repo.upsert_subscription(
            seed_data["bob_id"], "cust_bob", "sub_1", "premium", "active",
            current_period_end=datetime(2026, 2, 1, tzinfo=timezone.utc),
        )
        sub = repo.upsert_subscription(seed_data["bob_id"], "cust_bob", "sub_1", "premium", "past_due")
        assert sub.current_period_end is not None

    def test_upsert_subscription_keeps_product_when_absent(self, db_session, seed_data):
        repo = BillingRepository(db_session)
        repo.upsert_subscription(seed_data["bob_id"], "cust_bob", "sub_1", "premium", "active")

        sub = repo.upsert_subscription(seed_data["bob_id"], "cust_bob", "sub_1", None, "past_due")
        assert sub.product_id == "premium"
        assert sub.status == "past_due"

        sub = repo.upsert_subscription(seed_data["bob_id"], "cust_bob", "sub_1", "basic", "active")
        assert sub.product_id == "basic"

    def test_upsert_subscription_without_product_creates_row(self, db_session, seed_data):
        repo = BillingRepository(db_session)
        repo.upsert_subscription(seed_data["bob_id"], "cust_bob", "sub_1", None, "active")
        db_session.commit()

        sub = repo.get_subscription("sub_1")
        assert sub.product_id is None
        assert sub.status == "active"

    def test_upsert_subscription_overwrites_canceled_at(self, db_session, seed_data):
        repo = BillingRepository(db_session)
        repo.upsert_subscription(
            seed_data["bob_id"], "cust_bob", "sub_1", "premium", "canceled",
            canceled_at=datetime(2026, 1, 15, tzinfo=timezone.utc),
        )
        sub = repo.upsert_subscription(seed_data["bob_id"], "cust_bob", "sub_1", "premium", "active")
        assert sub.canceled_at is None

    def test_upsert_payment_reports_previous_status(self, db_session, seed_data):
        repo = BillingRepository(db_session)
        payment, previous = repo.upsert_payment(
            seed_data["bob_id"], "cust_bob", "pay_1", "premium", 999, "usd",
            "pending", "subscription",
        )
        assert previous is None

        payment, previous = repo.upsert_payment(
            seed_data["bob_id"], "cust_bob", "pay_1", "premium", None, None,
            "succeeded", "subscription",
        )
        assert previous == "pending"
        assert payment.amount == 999  # None leaves the stored amount

    def test_record_event_insert_if_absent(self, db_session, seed_data):
        repo = BillingRepository(db_session)
        assert repo.record_event("evt_1", "subscription.active") is True
        db_session.commit()

        assert repo.record_event("evt_1", "subscription.active") is False
        assert repo.is_event_processed("evt_1")
        assert not repo.is_event_processed("evt_1", provider="other")
        assert WebhookEvent.query.count() == 1

    def test_list_webhook_events_newest_first(self, db_session, seed_data):
        now = datetime.now(timezone.utc)
        db_session.add_all([
            WebhookEvent(event_id="evt_old", event_type="a", created_at=now - timedelta(hours=1)),
            WebhookEvent(event_id="evt_new", event_type="b", created_at=now),
        ])
        db_session.commit()

        events = BillingRepository(db_session).list_webhook_events(limit=1)
        assert [e.event_id for e in events] == ["evt_new"]

    def test_link_customer_logs_change(self, db_session, seed_data, caplog):
        repo = BillingRepository(db_session)
        bob = db_session.get(User, seed_data["bob_id"])

        with caplog.at_level(logging.WARNING, logger="app.services.billing_service"):
            repo.link_customer(bob, "cust_bob_2")

        assert bob.payment_provider_customer_id == "cust_bob_2"
        assert "changing" in caplog.text
        assert repo.find_user_by_customer_id("cust_bob_2").id == seed_data["bob_id"]

    def test_link_customer_owned_by_other_user_is_skipped(self, db_session, seed_data, caplog):
        repo = BillingRepository(db_session)
        alice = db_session.get(User, seed_data["alice_id"])

        with caplog.at_level(logging.WARNING, logger="app.services.billing_service"):
            repo.link_customer(alice, "cust_bob")
        db_session.commit()

        assert alice.payment_provider_customer_id is None
        assert repo.find_user_by_customer_id("cust_bob").id == seed_data["bob_id"]
        assert "already linked" in caplog.text


class TestCreditService:

    def test_initialize_is_idempotent(self, db_session, seed_data):
        first = credit_service.initialize_user_credits(seed_data["alice_id"], initial_credits=3)
        second = credit_service.initialize_user_credits(seed_data["alice_id"], initial_credits=50)
        db_session.commit()

        assert first.id == second.id
        assert second.remaining_credits == 3

    def test_add_creates_row(self, db_session, seed_data):
        credits = credit_service.add_credits(seed_data["alice_id"], 30)
        assert credits.total_credits == 30
        assert credits.remaining_credits == 30

    def test_add_then_deduct(self, db_session, seed_data):
        credit_service.initialize_user_credits(seed_data["alice_id"], initial_credits=3)
        credit_service.add_credits(seed_data["alice_id"], 30)
        credits = credit_service.deduct_credits(seed_data["alice_id"], 5)

        assert credits.total_credits == 33
        assert credits.used_credits == 5
        assert credits.remaining_credits == 28
        assert credit_service.has_enough_credits(seed_data["alice_id"], 28)
        assert not credit_service.has_enough_credits(seed_data["alice_id"], 29)

    def test_deduct_never_goes_negative(self, db_session, seed_data):
        credit_service.initialize_user_credits(seed_data["alice_id"], initial_credits=1)
        with pytest.raises(InsufficientCredits):
            credit_service.deduct_credits(seed_data["alice_id"], 2)

        assert credit_service.get_user_credits(seed_data["alice_id"]).remaining_credits == 1

    def test_non_positive_amounts_rejected(self, db_session, seed_data):
        with pytest.raises(ValueError):
            credit_service.add_credits(seed_data["alice_id"], 0)
        with pytest.raises(ValueError):
            credit_service.deduct_credits(seed_data["alice_id"], -1)
