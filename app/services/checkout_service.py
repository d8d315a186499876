"""Checkout service — synchronous billing flows for signed-in users.

Responsible for:
- Creating provider checkout sessions (subscription or one-time)
- Refusing a second subscription checkout while one is active/trialing
  (BILLING_SUBSCRIPTION_POLICY = "single") and pointing the user at the
  portal instead
- Creating customer portal links
- Reporting payment status after a checkout redirect

These flows only read local billing state; webhooks own all writes.
"""

import logging
import uuid
from urllib.parse import urlencode

from flask import current_app

from app.errors import (
    BusinessConflict,
    InvalidCheckoutRequest,
    NoBillingCustomer,
    ProviderError,
)
from app.products import get_tier_by_id, resolve_product_id
from app.services.billing_service import BillingRepository
from app.services.creem_client import CreemClient

logger = logging.getLogger(__name__)

PAYMENT_MODES = ("subscription", "one_time")
BILLING_CYCLES = ("monthly", "yearly")


def _billing_page_url(**params):
    base = current_app.config["APP_BASE_URL"].rstrip("/")
    query = urlencode({"page": "billing", **params})
    return f"{base}/dashboard/settings?{query}"


# ──────────────────────────────────────────────
# Checkout
# ──────────────────────────────────────────────

def create_checkout_session(user, tier_id, payment_mode, billing_cycle=None,
                            client=None, repository=None):
    """Create a hosted checkout for a user and return its URL.

    Raises:
        InvalidCheckoutRequest: unknown tier / mode / cycle, or no product
            mapped for the combination.
        BusinessConflict: subscription checkout while the user already holds
            an active or trialing subscription (single-subscription policy).
            Carries management_url; the checkout API is never called.
        ProviderError: the provider call failed.
    """
    repository = repository or BillingRepository()

    if payment_mode not in PAYMENT_MODES:
        raise InvalidCheckoutRequest(f"Unsupported payment mode: {payment_mode}")
    if billing_cycle is not None and billing_cycle not in BILLING_CYCLES:
        raise InvalidCheckoutRequest(f"Unsupported billing cycle: {billing_cycle}")

    tier = get_tier_by_id(tier_id)
    if not tier:
        raise InvalidCheckoutRequest(f'Pricing tier with id "{tier_id}" not found.')

    product_id = resolve_product_id(tier, payment_mode, billing_cycle)
    if not product_id:
        raise InvalidCheckoutRequest(
            f'No product configured for tier "{tier_id}" '
            f"(mode={payment_mode}, cycle={billing_cycle})"
        )

    if client is None:
        client = CreemClient.from_config()

    if payment_mode == "subscription":
        _ensure_can_subscribe(user, repository, client)

    checkout_url = client.create_checkout(
        product_id=product_id,
        success_url=_billing_page_url(status="success"),
        customer_email=user.email,
        metadata={
            "userId": user.id,
            "tierId": tier_id,
            "paymentMode": payment_mode,
            "billingCycle": billing_cycle,
        },
        request_id=str(uuid.uuid4()),
    )

    logger.info(
        f"Created {payment_mode} checkout for user {user.id} (tier={tier_id}, cycle={billing_cycle})"
    )
    return checkout_url


def _ensure_can_subscribe(user, repository, client):
    """Block a new subscription checkout while one is active/trialing."""
    if current_app.config.get("BILLING_SUBSCRIPTION_POLICY", "single") != "single":
        return

    existing = repository.get_user_subscription(user.id)
    if not existing or not existing.is_active:
        return

    try:
        management_url = client.create_customer_portal_url(existing.customer_id)
    except ProviderError as e:
        logger.warning(
            f"Portal link unavailable for user {user.id} during checkout conflict: {e}"
        )
        management_url = _billing_page_url()

    logger.info(
        f"Blocked checkout for user {user.id}: subscription "
        f"{existing.subscription_id} is {existing.status}"
    )
    raise BusinessConflict(
        "You already have an active subscription. Manage it from the billing portal.",
        management_url=management_url,
    )


# ──────────────────────────────────────────────
# Portal
# ──────────────────────────────────────────────

def create_customer_portal_url(user, client=None, repository=None):
    """Return a provider billing-portal URL for the user.

    Raises NoBillingCustomer if the user has never completed a checkout.
    Raises ProviderError on provider failures.
    """
    repository = repository or BillingRepository()

    subscription = repository.get_user_subscription(user.id)
    customer_id = (
        subscription.customer_id if subscription else None
    ) or user.payment_provider_customer_id

    if not customer_id:
        raise NoBillingCustomer("No billing customer found for this user.")

    if client is None:
        client = CreemClient.from_config()
    return client.create_customer_portal_url(customer_id)


# ──────────────────────────────────────────────
# Payment status (post-checkout polling)
# ──────────────────────────────────────────────

CHECKOUT_STATUS_MAP = {
    "completed": ("success", "Payment completed successfully"),
    "failed": ("failed", "Payment failed"),
    "canceled": ("cancelled", "Payment was cancelled"),
}


def get_payment_status(user, checkout_id, client=None, repository=None):
    """Best-effort status for the page the provider redirects back to.

    Prefers local subscription state (written by webhooks); falls back to
    asking the provider about the checkout. Provider failures degrade to
    "pending" rather than a false negative.
    """
    repository = repository or BillingRepository()

    subscription = repository.get_user_subscription(user.id) if user else None
    if subscription:
        if subscription.status in ("active", "trialing"):
            return {
                "status": "success",
                "subscription": subscription.to_dict(),
                "message": "Payment successful and subscription is active",
            }
        if subscription.status in ("past_due", "unpaid"):
            return {
                "status": "failed",
                "subscription": subscription.to_dict(),
                "message": "Payment failed or subscription is past due",
            }
        # A canceled subscription during a new checkout is not this payment's outcome.

    if client is None:
        client = CreemClient.from_config()

    try:
        checkout = client.retrieve_checkout(checkout_id)
    except ProviderError as e:
        logger.warning(f"Could not check payment status for checkout {checkout_id}: {e}")
        return {
            "status": "pending",
            "message": "Payment status is being verified. Please wait a moment.",
            "sessionId": checkout_id,
        }

    status, message = CHECKOUT_STATUS_MAP.get(
        (checkout or {}).get("status"),
        ("pending", "Payment is being processed. This may take a few minutes."),
    )
    return {"status": status, "message": message, "sessionId": checkout_id}
