"""Creem API client — every outbound call to the payment provider.

Thin wrapper over the Creem REST API using requests:
- Creating checkout sessions
- Creating customer portal links
- Cancelling subscriptions
- Retrieving a checkout (payment status fallback)
- Retrieving products (config verification CLI)

Any network error, non-2xx answer, or response missing the expected field
raises ProviderError, so callers can tell provider failures apart from
business conflicts.
"""

import logging

import requests
from flask import current_app

from app.errors import ProviderError

logger = logging.getLogger(__name__)

CREEM_API_URLS = {
    "live_mode": "https://api.creem.io",
    "test_mode": "https://test-api.creem.io",
}


class CreemClient:
    def __init__(self, api_key, environment="test_mode", timeout=10):
        self.api_key = api_key
        self.base_url = CREEM_API_URLS.get(environment, CREEM_API_URLS["test_mode"])
        self.timeout = timeout

    @classmethod
    def from_config(cls, config=None):
        """Build a client from the Flask app config."""
        config = config if config is not None else current_app.config
        return cls(
            api_key=config["CREEM_API_KEY"],
            environment=config.get("CREEM_ENVIRONMENT", "test_mode"),
            timeout=config.get("CREEM_REQUEST_TIMEOUT", 10),
        )

    def _request(self, method, path, **kwargs):
        url = f"{self.base_url}{path}"
        headers = {"x-api-key": self.api_key, "Accept": "application/json"}
        try:
            resp = requests.request(
                method, url, headers=headers, timeout=self.timeout, **kwargs
            )
        except requests.RequestException as e:
            logger.error(f"Creem {method} {path} failed: {e}")
            raise ProviderError(f"Payment provider unreachable: {e}") from e

        if resp.status_code >= 400:
            logger.error(
                f"Creem {method} {path} returned {resp.status_code}: {resp.text[:500]}"
            )
            raise ProviderError(
                f"Payment provider returned HTTP {resp.status_code}"
            )

        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError("Payment provider returned a non-JSON response") from e

    @staticmethod
    def _require(data, key, what):
        value = data.get(key) if isinstance(data, dict) else None
        if not value:
            raise ProviderError(f"Invalid {what} response from payment provider: missing {key}")
        return value

    # ──────────────────────────────────────────────
    # Checkout & Portal
    # ──────────────────────────────────────────────

    def create_checkout(self, product_id, success_url, customer_email=None,
                        metadata=None, request_id=None):
        """Create a hosted checkout. Returns the checkout URL."""
        body = {
            "product_id": product_id,
            "success_url": success_url,
            "metadata": metadata or {},
        }
        if customer_email:
            body["customer"] = {"email": customer_email}
        if request_id:
            body["request_id"] = request_id

        data = self._request("POST", "/v1/checkouts", json=body)
        return self._require(data, "checkout_url", "checkout")

    def create_customer_portal_url(self, customer_id):
        """Create a customer billing-portal link. Returns the URL."""
        data = self._request(
            "POST", "/v1/customers/billing", json={"customer_id": customer_id}
        )
        return self._require(data, "customer_portal_link", "customer portal")

    def cancel_subscription(self, subscription_id):
        """Ask the provider to cancel a subscription.

        Local state changes only when the resulting subscription.canceled
        webhook is reconciled.
        """
        return self._request("POST", f"/v1/subscriptions/{subscription_id}/cancel")

    def retrieve_checkout(self, checkout_id):
        return self._request(
            "GET", "/v1/checkouts", params={"checkout_id": checkout_id}
        )

    def retrieve_product(self, product_id):
        return self._request(
            "GET", "/v1/products", params={"product_id": product_id}
        )
