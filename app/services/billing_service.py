"""Billing repository — persistence for subscriptions, payments and the
webhook ledger.

Responsible for:
- Upserting subscriptions / payments keyed by the provider's natural ids
- Recording webhook events in the idempotency ledger (insert-if-absent)
- Resolving the authoritative subscription for a user
- Linking provider customers to local users

The repository never commits. The caller (the reconciler, or a request
handler) owns the transaction; everything here only flushes.
"""

import logging

from sqlalchemy.exc import IntegrityError

from app.extensions import db
from app.models.billing import Payment, Subscription
from app.models.user import User
from app.models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)


class BillingRepository:
    """Conflict-resolving writes keyed by natural identifiers.

    Takes the session explicitly so the reconciler and tests decide which
    transaction the writes land in.
    """

    def __init__(self, session=None):
        self.session = session if session is not None else db.session

    # ──────────────────────────────────────────────
    # Idempotency ledger
    # ──────────────────────────────────────────────

    def is_event_processed(self, event_id, provider="creem"):
        """True if (event_id, provider) is already in the ledger."""
        return (
            self.session.query(WebhookEvent.id)
            .filter_by(event_id=event_id, provider=provider)
            .first()
            is not None
        )

    def record_event(self, event_id, event_type, provider="creem", payload=None):
        """Insert the ledger row for an event.

        The insert is the atomic commit point for idempotency: a concurrent
        delivery of the same event blocks on the unique index and then fails
        here. Returns False when the row already exists; the session has been
        rolled back in that case, so this must be the first write of the
        transaction.
        """
        event = WebhookEvent(
            event_id=event_id,
            event_type=event_type,
            provider=provider,
            payload=payload,
            processed=True,
        )
        self.session.add(event)
        try:
            self.session.flush()
        except IntegrityError:
            self.session.rollback()
            logger.info(
                f"Webhook event {provider}:{event_id} recorded by a concurrent delivery"
            )
            return False
        return True

    def list_webhook_events(self, provider=None, limit=20):
        """Most recent ledger rows, newest first."""
        query = self.session.query(WebhookEvent)
        if provider:
            query = query.filter_by(provider=provider)
        return (
            query.order_by(WebhookEvent.created_at.desc(), WebhookEvent.id.desc())
            .limit(limit)
            .all()
        )

    # ──────────────────────────────────────────────
    # Subscriptions
    # ──────────────────────────────────────────────

    def upsert_subscription(self, user_id, customer_id, subscription_id,
                            product_id, status, current_period_start=None,
                            current_period_end=None, canceled_at=None):
        """Create or update a Subscription by subscription_id.

        Last write wins: customer, status and canceled_at are always
        overwritten with the event's values (canceled_at=None clears it).

        Exception: product_id and the period bounds are optional in provider
        payloads, and None means "not reported by this event", not "cleared".
        Those fields keep their stored values when the event omits them;
        whenever the event carries them, the event's value wins.
        """
        sub = self.get_subscription(subscription_id)

        if sub:
            sub.customer_id = customer_id
            sub.status = status
            if product_id is not None:
                sub.product_id = product_id
            if current_period_start is not None:
                sub.current_period_start = current_period_start
            if current_period_end is not None:
                sub.current_period_end = current_period_end
            sub.canceled_at = canceled_at
        else:
            sub = Subscription(
                user_id=user_id,
                customer_id=customer_id,
                subscription_id=subscription_id,
                product_id=product_id,
                status=status,
                current_period_start=current_period_start,
                current_period_end=current_period_end,
                canceled_at=canceled_at,
            )
            self.session.add(sub)

        self.session.flush()
        return sub

    def get_subscription(self, subscription_id):
        return (
            self.session.query(Subscription)
            .filter_by(subscription_id=subscription_id)
            .first()
        )

    def mark_subscription_canceled(self, subscription_id, canceled_at):
        """Status transition to canceled. Returns None if no local row exists."""
        sub = self.get_subscription(subscription_id)
        if not sub:
            return None
        sub.status = "canceled"
        sub.canceled_at = canceled_at
        self.session.flush()
        return sub

    def get_user_subscription(self, user_id):
        """Return the subscription that is authoritative for a user.

        Most recently created active/trialing row; otherwise the most recently
        created row of any status; otherwise None. More than one
        active/trialing row is a data-consistency anomaly: it is logged, not
        corrected.
        """
        subs = (
            self.session.query(Subscription)
            .filter_by(user_id=user_id)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .all()
        )
        if not subs:
            return None

        active = [s for s in subs if s.status in Subscription.ACTIVE_STATUSES]
        if len(active) > 1:
            logger.warning(
                f"User {user_id} has {len(active)} active/trialing subscriptions "
                f"({', '.join(s.subscription_id for s in active)}). "
                f"This may indicate a data consistency issue. Returning the most recent one."
            )
        if active:
            return active[0]
        return subs[0]

    # ──────────────────────────────────────────────
    # Payments
    # ──────────────────────────────────────────────

    def upsert_payment(self, user_id, customer_id, payment_id, product_id,
                       amount, currency, status, payment_type,
                       subscription_id=None):
        """Create or update a Payment by payment_id.

        Returns (payment, previous_status). previous_status is None for a new
        row, so callers can tell a first success from a redelivery and never
        grant anything twice. amount / currency of None leave the stored
        values alone (some renewal events carry no amount).
        """
        payment = (
            self.session.query(Payment)
            .filter_by(payment_id=payment_id)
            .first()
        )

        if payment:
            previous_status = payment.status
            payment.status = status
            if amount is not None:
                payment.amount = amount
            if currency:
                payment.currency = currency
            if subscription_id:
                payment.subscription_id = subscription_id
        else:
            previous_status = None
            payment = Payment(
                user_id=user_id,
                customer_id=customer_id,
                subscription_id=subscription_id,
                product_id=product_id,
                payment_id=payment_id,
                amount=amount if amount is not None else 0,
                currency=currency or "usd",
                status=status,
                payment_type=payment_type,
            )
            self.session.add(payment)

        self.session.flush()
        return payment, previous_status

    def get_user_payments(self, user_id, limit=10):
        return (
            self.session.query(Payment)
            .filter_by(user_id=user_id)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .limit(limit)
            .all()
        )

    # ──────────────────────────────────────────────
    # Customers
    # ──────────────────────────────────────────────

    def find_user_by_customer_id(self, customer_id):
        if not customer_id:
            return None
        return (
            self.session.query(User)
            .filter_by(payment_provider_customer_id=customer_id)
            .first()
        )

    def get_user(self, user_id):
        if not user_id:
            return None
        return self.session.get(User, user_id)

    def link_customer(self, user, customer_id):
        """Attach a provider customer id to a user (idempotent).

        A customer id already linked to a different user is left where it is
        and logged. Re-linking would violate the unique index on every
        redelivery, so the event is applied without moving the link.
        """
        if user.payment_provider_customer_id != customer_id:
            owner = self.find_user_by_customer_id(customer_id)
            if owner is not None and owner.id != user.id:
                logger.warning(
                    f"Customer {customer_id} is already linked to user {owner.id}; "
                    f"not linking it to user {user.id}"
                )
                return user

            if user.payment_provider_customer_id:
                logger.warning(
                    f"User {user.id} customer id changing from "
                    f"{user.payment_provider_customer_id} to {customer_id}"
                )
            user.payment_provider_customer_id = customer_id
            self.session.flush()
        return user
