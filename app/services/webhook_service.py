"""Webhook service — verification, event parsing and reconciliation.

Responsible for:
- Verifying the creem-signature HMAC over the exact raw request body
- Parsing a verified body into one typed event per provider event family
- Reconciling events into subscriptions / payments / credits, exactly once
  per (event_id, provider), inside a single transaction

Flow for every event:
    is_event_processed? -> record_event (unique insert) -> handler -> commit

The ledger insert and the entity writes commit together or not at all, so a
failed attempt leaves nothing behind and the provider's retry starts over.
Parsing happens before any transaction: a malformed body is rejected and
never recorded, so a corrected redelivery with the same event id succeeds.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.errors import (
    InvalidSignature,
    MalformedPayload,
    MissingSignature,
    TransientFailure,
    UnknownCustomer,
    WebhookConfigurationError,
)
from app.extensions import db
from app.products import get_tier_by_id, normalize_product_id
from app.services import credit_service
from app.services.billing_service import BillingRepository

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "creem-signature"

# Provider statuses that map onto our status set.
STATUS_ALIASES = {
    "expired": "canceled",
    "scheduled_cancel": "active",
}
SUBSCRIPTION_STATUSES = {
    "active", "trialing", "past_due", "unpaid", "canceled", "incomplete",
}

SUBSCRIPTION_CHANGED_TYPES = {
    "subscription.active",
    "subscription.updated",
    "subscription.update",
    "subscription.trialing",
    "subscription.past_due",
    "subscription.unpaid",
    "subscription.expired",
}


# ──────────────────────────────────────────────
# Typed events
# ──────────────────────────────────────────────

class EventKind(Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_CHANGED = "subscription_changed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    PAYMENT_RECEIVED = "payment_received"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class SubscriptionData:
    subscription_id: str
    customer_id: str
    product_id: Optional[str]
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    user_id: Optional[str] = None  # metadata.userId, when the provider echoes it
    last_transaction_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None


@dataclass(frozen=True)
class OrderData:
    payment_id: str
    amount: int
    currency: str
    product_id: Optional[str] = None


@dataclass(frozen=True)
class PaymentData:
    payment_id: str
    customer_id: str
    status: str  # succeeded | failed
    amount: int
    currency: str
    payment_type: str
    product_id: Optional[str] = None
    subscription_id: Optional[str] = None
    user_id: Optional[str] = None
    billing_reason: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


@dataclass(frozen=True)
class ProviderEvent:
    event_id: str
    event_type: str
    payload: str  # raw body, stored in the ledger

    kind: ClassVar[EventKind] = EventKind.UNRECOGNIZED


@dataclass(frozen=True)
class CheckoutCompleted(ProviderEvent):
    checkout_id: str
    customer_id: str
    user_id: str
    payment_mode: str  # subscription | one_time
    tier_id: Optional[str]
    subscription: Optional[SubscriptionData]
    order: Optional[OrderData]

    kind: ClassVar[EventKind] = EventKind.CHECKOUT_COMPLETED


@dataclass(frozen=True)
class SubscriptionChanged(ProviderEvent):
    subscription: SubscriptionData

    kind: ClassVar[EventKind] = EventKind.SUBSCRIPTION_CHANGED


@dataclass(frozen=True)
class SubscriptionCanceled(ProviderEvent):
    subscription: SubscriptionData

    kind: ClassVar[EventKind] = EventKind.SUBSCRIPTION_CANCELED


@dataclass(frozen=True)
class SubscriptionRenewed(ProviderEvent):
    subscription: SubscriptionData

    kind: ClassVar[EventKind] = EventKind.SUBSCRIPTION_RENEWED


@dataclass(frozen=True)
class PaymentReceived(ProviderEvent):
    payment: PaymentData

    kind: ClassVar[EventKind] = EventKind.PAYMENT_RECEIVED


@dataclass(frozen=True)
class UnrecognizedEvent(ProviderEvent):
    kind: ClassVar[EventKind] = EventKind.UNRECOGNIZED


# ──────────────────────────────────────────────
# Signature verification
# ──────────────────────────────────────────────

def compute_signature(raw_body, secret):
    """Hex HMAC-SHA256 of the raw body under the webhook secret."""
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_webhook_signature(raw_body, signature_header, secret):
    """Verify the signature and parse the body into a typed event.

    raw_body must be the exact bytes received; re-serialised JSON will not
    match. Raises MissingSignature, InvalidSignature, MalformedPayload or
    WebhookConfigurationError. No side effects.
    """
    if not secret:
        raise WebhookConfigurationError("Webhook secret is not configured")
    if not signature_header or not signature_header.strip():
        raise MissingSignature("Missing webhook signature header")

    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")

    expected = compute_signature(raw_body, secret)
    received = signature_header.strip().lower()
    if not hmac.compare_digest(expected.encode("ascii"), received.encode("utf-8")):
        logger.debug(f"Signature mismatch (received {len(received)} chars)")
        raise InvalidSignature("Invalid signature")

    return parse_event(raw_body)


# ──────────────────────────────────────────────
# Parsing
# ──────────────────────────────────────────────

def parse_event(raw_body):
    """Parse a raw webhook body into a typed ProviderEvent.

    Raises MalformedPayload for non-JSON bodies, missing envelope fields, or
    objects that do not match what their event type requires.
    """
    if isinstance(raw_body, bytes):
        try:
            payload_text = raw_body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedPayload("Body is not valid UTF-8") from e
    else:
        payload_text = raw_body

    try:
        envelope = json.loads(payload_text)
    except ValueError as e:
        raise MalformedPayload(f"Body is not valid JSON: {e}") from e

    if not isinstance(envelope, dict):
        raise MalformedPayload("Event envelope must be a JSON object")

    event_id = envelope.get("id")
    event_type = envelope.get("eventType") or envelope.get("type")
    obj = envelope.get("object")

    if not event_id or not isinstance(event_id, str):
        raise MalformedPayload("Event envelope is missing 'id'")
    if not event_type or not isinstance(event_type, str):
        raise MalformedPayload("Event envelope is missing 'eventType'")

    base = {"event_id": event_id, "event_type": event_type, "payload": payload_text}

    if event_type == "checkout.completed":
        return _parse_checkout(base, _require_object(obj, event_type))

    if event_type in SUBSCRIPTION_CHANGED_TYPES:
        return SubscriptionChanged(
            subscription=_parse_subscription(_require_object(obj, event_type)),
            **base,
        )

    if event_type == "subscription.canceled":
        return SubscriptionCanceled(
            subscription=_parse_subscription(_require_object(obj, event_type)),
            **base,
        )

    if event_type == "subscription.paid":
        obj = _require_object(obj, event_type)
        if "amount" in obj or "amount_paid" in obj:
            # Invoice-shaped renewal: record the payment and roll the period.
            return PaymentReceived(
                payment=_parse_payment(obj, "succeeded", "subscription_cycle"),
                **base,
            )
        return SubscriptionRenewed(subscription=_parse_subscription(obj), **base)

    if event_type in ("payment.succeeded", "payment.failed"):
        status = "succeeded" if event_type == "payment.succeeded" else "failed"
        return PaymentReceived(
            payment=_parse_payment(_require_object(obj, event_type), status),
            **base,
        )

    return UnrecognizedEvent(**base)


def _require_object(obj, event_type):
    if not isinstance(obj, dict):
        raise MalformedPayload(f"{event_type}: 'object' must be a JSON object")
    return obj


def _ref_id(value):
    """Provider references arrive either as an id string or as {"id": ...}."""
    if isinstance(value, str) and value:
        return value
    if isinstance(value, dict) and isinstance(value.get("id"), str):
        return value["id"]
    return None


def _required(obj, key, context, getter=None):
    value = getter(obj.get(key)) if getter else obj.get(key)
    if not value or not isinstance(value, str):
        raise MalformedPayload(f"{context}: missing '{key}'")
    return value


def _parse_datetime(value, field):
    """ISO-8601 strings, date-only strings, or epoch seconds -> aware UTC."""
    if value in (None, ""):
        return None
    try:
        if isinstance(value, bool):
            raise TypeError("boolean is not a timestamp")
        if isinstance(value, (int, float)):
            if value > 10_000_000_000:  # epoch milliseconds
                value = value / 1000
            return datetime.fromtimestamp(value, tz=timezone.utc)
        if isinstance(value, str):
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError) as e:
        raise MalformedPayload(f"'{field}' is not a valid timestamp: {value!r}") from e
    raise MalformedPayload(f"'{field}' is not a valid timestamp: {value!r}")


def _parse_amount(value, field):
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedPayload(f"'{field}' must be an integer amount in minor units")
    if isinstance(value, float) and not value.is_integer():
        raise MalformedPayload(f"'{field}' must be an integer amount in minor units")
    return int(value)


def _normalize_status(raw_status):
    status = STATUS_ALIASES.get(raw_status, raw_status)
    if status not in SUBSCRIPTION_STATUSES:
        raise MalformedPayload(f"Unsupported subscription status: {raw_status!r}")
    return status


def _metadata(obj):
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def _parse_subscription(obj):
    context = "subscription"
    product = obj.get("product")
    amount = currency = None
    if isinstance(product, dict):
        amount = _parse_amount(product.get("price"), "product.price")
        currency = product.get("currency")

    return SubscriptionData(
        subscription_id=_required(obj, "id", context),
        customer_id=_required(obj, "customer", context, _ref_id),
        product_id=_ref_id(product),  # optional: lifecycle events may omit it
        status=_normalize_status(_required(obj, "status", context)),
        current_period_start=_parse_datetime(
            obj.get("current_period_start_date"), "current_period_start_date"
        ),
        current_period_end=_parse_datetime(
            obj.get("current_period_end_date"), "current_period_end_date"
        ),
        canceled_at=_parse_datetime(obj.get("canceled_at"), "canceled_at"),
        user_id=_metadata(obj).get("userId"),
        last_transaction_id=obj.get("last_transaction_id"),
        amount=amount,
        currency=currency.lower() if isinstance(currency, str) else None,
    )


def _parse_checkout(base, obj):
    context = "checkout.completed"
    metadata = _metadata(obj)

    user_id = metadata.get("userId")
    if not user_id:
        raise MalformedPayload(f"{context}: metadata.userId is missing")

    subscription = None
    sub_obj = obj.get("subscription")
    if isinstance(sub_obj, dict):
        subscription = _parse_subscription(sub_obj)

    payment_mode = metadata.get("paymentMode") or "subscription"
    if payment_mode not in ("subscription", "one_time"):
        raise MalformedPayload(f"{context}: unsupported paymentMode {payment_mode!r}")
    if payment_mode == "subscription" and subscription is None:
        raise MalformedPayload(f"{context}: subscription mode without a subscription object")

    order = None
    order_obj = obj.get("order")
    if isinstance(order_obj, dict):
        payment_id = order_obj.get("transaction") or order_obj.get("id")
        amount = _parse_amount(
            order_obj.get("amount_due", order_obj.get("amount")), "order.amount_due"
        )
        if not payment_id or amount is None:
            raise MalformedPayload(f"{context}: order is missing transaction or amount")
        order = OrderData(
            payment_id=payment_id,
            amount=amount,
            currency=(order_obj.get("currency") or "usd").lower(),
            product_id=_ref_id(order_obj.get("product")),
        )
    if payment_mode == "one_time" and order is None:
        raise MalformedPayload(f"{context}: one-time checkout without an order")

    return CheckoutCompleted(
        checkout_id=_required(obj, "id", context),
        customer_id=_required(obj, "customer", context, _ref_id),
        user_id=user_id,
        payment_mode=payment_mode,
        tier_id=metadata.get("tierId"),
        subscription=subscription,
        order=order,
        **base,
    )


def _parse_payment(obj, status, billing_reason=None):
    context = "payment"
    metadata = _metadata(obj)

    line = {}
    lines = obj.get("lines")
    if isinstance(lines, dict) and isinstance(lines.get("data"), list) and lines["data"]:
        if isinstance(lines["data"][0], dict):
            line = lines["data"][0]
    period = line.get("period") if isinstance(line.get("period"), dict) else {}
    price = line.get("price") if isinstance(line.get("price"), dict) else {}

    amount = _parse_amount(obj.get("amount", obj.get("amount_paid")), "amount")
    if amount is None:
        raise MalformedPayload(f"{context}: missing 'amount'")

    subscription_id = _ref_id(obj.get("subscription_id")) or _ref_id(obj.get("subscription"))

    return PaymentData(
        payment_id=_required(obj, "id", context),
        customer_id=_required(obj, "customer", context, _ref_id),
        status=status,
        amount=amount,
        currency=(obj.get("currency") or "usd").lower(),
        payment_type=(
            metadata.get("paymentMode")
            or ("subscription" if subscription_id else "one_time")
        ),
        product_id=_ref_id(obj.get("product_id")) or _ref_id(price.get("product")),
        subscription_id=subscription_id,
        user_id=metadata.get("userId"),
        billing_reason=billing_reason or obj.get("billing_reason"),
        period_start=_parse_datetime(period.get("start"), "lines.period.start"),
        period_end=_parse_datetime(period.get("end"), "lines.period.end"),
    )


# ──────────────────────────────────────────────
# Reconciliation
# ──────────────────────────────────────────────

class ResultStatus(Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"  # unrecognized type, recorded as handled
    ALREADY_PROCESSED = "already_processed"


@dataclass(frozen=True)
class ReconciliationResult:
    status: ResultStatus
    event_id: str
    event_type: str

    @property
    def already_processed(self):
        return self.status is ResultStatus.ALREADY_PROCESSED


class WebhookReconciler:
    """Routes typed events to transactional handlers.

    One handler per EventKind. The session is injected so the caller (and
    tests) control the transaction and the backing store.
    """

    def __init__(self, session=None, provider="creem", statement_timeout_ms=None):
        self.session = session if session is not None else db.session
        self.provider = provider
        self.statement_timeout_ms = statement_timeout_ms
        self.repository = BillingRepository(self.session)
        self._handlers = {
            EventKind.CHECKOUT_COMPLETED: self._handle_checkout_completed,
            EventKind.SUBSCRIPTION_CHANGED: self._handle_subscription_changed,
            EventKind.SUBSCRIPTION_CANCELED: self._handle_subscription_canceled,
            EventKind.SUBSCRIPTION_RENEWED: self._handle_subscription_renewed,
            EventKind.PAYMENT_RECEIVED: self._handle_payment_received,
            EventKind.UNRECOGNIZED: self._handle_unrecognized,
        }

    def reconcile(self, event):
        """Apply an event exactly once. Returns a ReconciliationResult.

        Raises TransientFailure for database errors (the provider should
        redeliver) and lets MalformedPayload / UnknownCustomer propagate.
        The session is always committed or rolled back on return.
        """
        try:
            self._apply_statement_timeout()

            if self.repository.is_event_processed(event.event_id, self.provider):
                self.session.rollback()
                logger.info(f"Duplicate webhook event {event.event_id}, skipping")
                return self._result(ResultStatus.ALREADY_PROCESSED, event)

            if not self.repository.record_event(
                event.event_id, event.event_type, self.provider, event.payload
            ):
                return self._result(ResultStatus.ALREADY_PROCESSED, event)

            status = self._handlers[event.kind](event)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(
                f"Database error reconciling {event.event_type} {event.event_id}: {e}",
                exc_info=True,
            )
            raise TransientFailure(f"Database error: {e.__class__.__name__}") from e
        except Exception:
            self.session.rollback()
            raise

        logger.info(f"Reconciled {event.event_type} {event.event_id}: {status.value}")
        return self._result(status, event)

    @staticmethod
    def _result(status, event):
        return ReconciliationResult(
            status=status, event_id=event.event_id, event_type=event.event_type
        )

    def _apply_statement_timeout(self):
        """Bound every statement of this transaction (PostgreSQL only)."""
        if not self.statement_timeout_ms:
            return
        if self.session.get_bind().dialect.name == "postgresql":
            self.session.execute(
                text(f"SET LOCAL statement_timeout = {int(self.statement_timeout_ms)}")
            )

    # --- helpers ---

    def _resolve_user(self, customer_id, user_id_hint=None):
        """Local user for a provider customer, falling back to metadata.userId."""
        user = self.repository.find_user_by_customer_id(customer_id)
        if user:
            return user

        user = self.repository.get_user(user_id_hint)
        if user:
            self.repository.link_customer(user, customer_id)
            return user

        raise UnknownCustomer(f"No user found for customer {customer_id}")

    def _grant_credits(self, user_id, product_id, payment, previous_status):
        """Grant tier credits the first time a payment is seen as succeeded."""
        if payment.status != "succeeded" or previous_status == "succeeded":
            return
        tier = get_tier_by_id(product_id)
        if not tier or not tier.get("credits"):
            return
        credit_service.add_credits(user_id, tier["credits"], session=self.session)
        logger.info(
            f"Granted {tier['credits']} credits to user {user_id} for payment {payment.payment_id}"
        )

    @staticmethod
    def _payment_product(subscription, payment_id):
        """Product for a subscription payment: whatever the row holds after the upsert."""
        if not subscription.product_id:
            raise MalformedPayload(f"payment {payment_id}: product id missing")
        return subscription.product_id

    def _record_payment(self, user, customer_id, payment_id, product_id, amount,
                        currency, status, payment_type, subscription_id=None):
        payment, previous_status = self.repository.upsert_payment(
            user_id=user.id,
            customer_id=customer_id,
            payment_id=payment_id,
            product_id=product_id,
            amount=amount,
            currency=currency,
            status=status,
            payment_type=payment_type,
            subscription_id=subscription_id,
        )
        self._grant_credits(user.id, payment.product_id, payment, previous_status)
        return payment

    # --- handlers ---

    def _handle_checkout_completed(self, event):
        user = self.repository.get_user(event.user_id)
        if not user:
            raise UnknownCustomer(f"checkout.completed for unknown user {event.user_id}")
        self.repository.link_customer(user, event.customer_id)

        if event.payment_mode == "subscription":
            sub = event.subscription
            product_id = normalize_product_id(
                sub.product_id
                or event.tier_id
                or (event.order.product_id if event.order else None)
            )
            row = self.repository.upsert_subscription(
                user_id=user.id,
                customer_id=event.customer_id,
                subscription_id=sub.subscription_id,
                product_id=product_id,
                status=sub.status,
                current_period_start=sub.current_period_start,
                current_period_end=sub.current_period_end,
                canceled_at=None,
            )
            if event.order:
                self._record_payment(
                    user, event.customer_id, event.order.payment_id,
                    self._payment_product(row, event.order.payment_id),
                    event.order.amount, event.order.currency, "succeeded",
                    "subscription", subscription_id=sub.subscription_id,
                )
        else:
            product_id = normalize_product_id(
                event.tier_id or event.order.product_id or event.checkout_id
            )
            self._record_payment(
                user, event.customer_id, event.order.payment_id, product_id,
                event.order.amount, event.order.currency, "succeeded", "one_time",
            )
        return ResultStatus.PROCESSED

    def _handle_subscription_changed(self, event):
        sub = event.subscription
        user = self._resolve_user(sub.customer_id, sub.user_id)

        canceled_at = None
        if sub.status == "canceled":
            canceled_at = sub.canceled_at or datetime.now(timezone.utc)

        self.repository.upsert_subscription(
            user_id=user.id,
            customer_id=sub.customer_id,
            subscription_id=sub.subscription_id,
            product_id=normalize_product_id(sub.product_id),
            status=sub.status,
            current_period_start=sub.current_period_start,
            current_period_end=sub.current_period_end,
            canceled_at=canceled_at,
        )
        return ResultStatus.PROCESSED

    def _handle_subscription_canceled(self, event):
        sub = event.subscription
        canceled_at = sub.canceled_at or datetime.now(timezone.utc)

        if self.repository.mark_subscription_canceled(sub.subscription_id, canceled_at):
            return ResultStatus.PROCESSED

        # Cancellation arrived before any event that created the row.
        user = self._resolve_user(sub.customer_id, sub.user_id)
        self.repository.upsert_subscription(
            user_id=user.id,
            customer_id=sub.customer_id,
            subscription_id=sub.subscription_id,
            product_id=normalize_product_id(sub.product_id),
            status="canceled",
            current_period_start=sub.current_period_start,
            current_period_end=sub.current_period_end,
            canceled_at=canceled_at,
        )
        return ResultStatus.PROCESSED

    def _handle_subscription_renewed(self, event):
        sub = event.subscription
        user = self._resolve_user(sub.customer_id, sub.user_id)
        product_id = normalize_product_id(sub.product_id)

        row = self.repository.upsert_subscription(
            user_id=user.id,
            customer_id=sub.customer_id,
            subscription_id=sub.subscription_id,
            product_id=product_id,
            status="active",
            current_period_start=sub.current_period_start,
            current_period_end=sub.current_period_end,
            canceled_at=None,
        )

        if sub.last_transaction_id:
            self._record_payment(
                user, sub.customer_id, sub.last_transaction_id,
                self._payment_product(row, sub.last_transaction_id),
                sub.amount, sub.currency, "succeeded", "subscription",
                subscription_id=sub.subscription_id,
            )
        return ResultStatus.PROCESSED

    def _handle_payment_received(self, event):
        payment = event.payment
        user = self._resolve_user(payment.customer_id, payment.user_id)

        product_id = payment.product_id
        if not product_id and payment.subscription_id:
            local_sub = self.repository.get_subscription(payment.subscription_id)
            if local_sub:
                product_id = local_sub.product_id
        if not product_id:
            raise MalformedPayload(f"payment {payment.payment_id}: product id missing")
        product_id = normalize_product_id(product_id)

        is_renewal = (
            payment.status == "succeeded"
            and payment.billing_reason == "subscription_cycle"
            and payment.subscription_id
            and payment.period_end
        )
        if is_renewal:
            self.repository.upsert_subscription(
                user_id=user.id,
                customer_id=payment.customer_id,
                subscription_id=payment.subscription_id,
                product_id=product_id,
                status="active",
                current_period_start=payment.period_start,
                current_period_end=payment.period_end,
                canceled_at=None,
            )

        self._record_payment(
            user, payment.customer_id, payment.payment_id, product_id,
            payment.amount, payment.currency, payment.status,
            payment.payment_type, subscription_id=payment.subscription_id,
        )
        return ResultStatus.PROCESSED

    def _handle_unrecognized(self, event):
        logger.info(f"Ignoring unhandled webhook event type: {event.event_type}")
        return ResultStatus.IGNORED
