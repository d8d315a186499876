"""Webhooks blueprint — /api/billing/webhooks/creem

Receives Creem webhook events. CSRF-exempt.
Raw body is required for signature verification.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from app.errors import (
    MalformedPayload,
    TransientFailure,
    VerificationError,
    WebhookConfigurationError,
)
from app.extensions import db
from app.services.webhook_service import (
    SIGNATURE_HEADER,
    WebhookReconciler,
    verify_webhook_signature,
)

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/billing/webhooks")


@webhooks_bp.route("/creem", methods=["POST"])
def creem_webhook():
    """Receive and reconcile Creem webhook events.

    1. Get raw body (required for signature verification)
    2. Verify signature with CREEM_WEBHOOK_SECRET and parse the event
    3. Reconcile (idempotent via webhook_events ledger)
    4. Return 200 for processed, ignored and already-processed events;
       anything else is non-2xx so the provider redelivers

    CSRF is exempted for this blueprint in create_app().
    """
    payload = request.get_data()
    sig_header = request.headers.get(SIGNATURE_HEADER)

    # --- Verify signature + parse ---
    try:
        event = verify_webhook_signature(
            payload, sig_header, current_app.config.get("CREEM_WEBHOOK_SECRET")
        )
    except WebhookConfigurationError:
        logger.error("Creem webhook secret is not configured")
        return jsonify({"error": "Webhook not configured"}), 500
    except VerificationError as e:
        logger.warning(f"Webhook rejected: {e}")
        return jsonify({"error": str(e)}), 400
    except MalformedPayload as e:
        logger.warning(f"Malformed webhook payload: {e}")
        return jsonify({"error": "Malformed payload"}), 400

    # --- Reconcile (idempotent) ---
    reconciler = WebhookReconciler(
        db.session,
        provider=current_app.config.get("PAYMENT_PROVIDER", "creem"),
        statement_timeout_ms=current_app.config.get("WEBHOOK_STATEMENT_TIMEOUT_MS"),
    )
    try:
        result = reconciler.reconcile(event)
    except MalformedPayload as e:
        logger.warning(f"Webhook {event.event_id} rejected during reconciliation: {e}")
        return jsonify({"error": "Malformed payload"}), 400
    except TransientFailure as e:
        logger.error(f"Webhook {event.event_id} ({event.event_type}) not applied: {e}")
        return jsonify({"error": "Temporary failure, retry later"}), 503
    except Exception as e:
        logger.error(f"Error handling {event.event_type} {event.event_id}: {e}", exc_info=True)
        return jsonify({"error": "Webhook processing failed"}), 500

    return jsonify({"received": True, "status": result.status.value}), 200
