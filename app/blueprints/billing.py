"""Billing blueprint — /api/billing/* and /api/payment-status

JSON endpoints for signed-in users.

Routes:
- POST /api/billing/checkout: create a checkout session, return its URL
- GET  /api/billing/portal: create a customer portal link
- GET  /api/billing/subscription: current subscription + recent payments
- GET  /api/payment-status: poll after the checkout redirect
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from app.errors import (
    BusinessConflict,
    InvalidCheckoutRequest,
    NoBillingCustomer,
    ProviderError,
)
from app.extensions import limiter
from app.services.billing_service import BillingRepository
from app.services.checkout_service import (
    BILLING_CYCLES,
    PAYMENT_MODES,
    create_checkout_session,
    create_customer_portal_url,
    get_payment_status,
)

logger = logging.getLogger(__name__)

billing_bp = Blueprint("billing", __name__, url_prefix="/api")


def _validate_checkout_body(body):
    """Return (data, errors) for a checkout request body."""
    if not isinstance(body, dict):
        return None, {"body": "Expected a JSON object"}

    errors = {}
    tier_id = body.get("tierId")
    payment_mode = body.get("paymentMode")
    billing_cycle = body.get("billingCycle")

    if not isinstance(tier_id, str) or not tier_id:
        errors["tierId"] = "Required"
    if payment_mode not in PAYMENT_MODES:
        errors["paymentMode"] = f"Must be one of: {', '.join(PAYMENT_MODES)}"
    if billing_cycle is not None and billing_cycle not in BILLING_CYCLES:
        errors["billingCycle"] = f"Must be one of: {', '.join(BILLING_CYCLES)}"

    if errors:
        return None, errors
    return {
        "tier_id": tier_id,
        "payment_mode": payment_mode,
        "billing_cycle": billing_cycle,
    }, None


# ──────────────────────────────────────────────
# POST /api/billing/checkout
# ──────────────────────────────────────────────

@billing_bp.route("/billing/checkout", methods=["POST"])
@login_required
@limiter.limit("10 per minute")
def checkout():
    """Create a checkout session and return {checkoutUrl}.

    409 {error, managementUrl} when the user already has an active
    subscription and asks for another one.
    """
    data, errors = _validate_checkout_body(request.get_json(silent=True))
    if errors:
        return jsonify({"error": "Invalid request body", "details": errors}), 400

    try:
        checkout_url = create_checkout_session(user=current_user, **data)
    except InvalidCheckoutRequest as e:
        return jsonify({"error": str(e)}), 400
    except BusinessConflict as e:
        return jsonify({"error": str(e), "managementUrl": e.management_url}), 409
    except ProviderError as e:
        logger.error(f"Checkout error for user {current_user.id}: {e}")
        return jsonify({
            "error": "Failed to create checkout session. Please try again later."
        }), 502

    return jsonify({"checkoutUrl": checkout_url})


# ──────────────────────────────────────────────
# GET /api/billing/portal
# ──────────────────────────────────────────────

@billing_bp.route("/billing/portal", methods=["GET"])
@login_required
@limiter.limit("10 per minute")
def customer_portal():
    """Return {portalUrl}, or 404 if the user has no billing customer yet."""
    try:
        portal_url = create_customer_portal_url(current_user)
    except NoBillingCustomer as e:
        return jsonify({"error": str(e)}), 404
    except ProviderError as e:
        logger.error(f"Portal session error for user {current_user.id}: {e}")
        return jsonify({"error": "Failed to open the billing portal."}), 502

    return jsonify({"portalUrl": portal_url})


# ──────────────────────────────────────────────
# GET /api/billing/subscription
# ──────────────────────────────────────────────

@billing_bp.route("/billing/subscription", methods=["GET"])
@login_required
def subscription_overview():
    """Current authoritative subscription and the latest payments."""
    repository = BillingRepository()
    subscription = repository.get_user_subscription(current_user.id)
    payments = repository.get_user_payments(current_user.id, limit=10)

    return jsonify({
        "subscription": subscription.to_dict() if subscription else None,
        "payments": [p.to_dict() for p in payments],
    })


# ──────────────────────────────────────────────
# GET /api/payment-status
# ──────────────────────────────────────────────

@billing_bp.route("/payment-status", methods=["GET"])
@login_required
def payment_status():
    """Polled by the post-checkout page until the webhook lands."""
    checkout_id = request.args.get("sessionId") or request.args.get("checkout_id")
    if not checkout_id:
        return jsonify({"error": "Session ID is required"}), 400

    return jsonify(get_payment_status(current_user, checkout_id))
