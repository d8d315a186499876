"""Billing error taxonomy.

Services raise these; blueprints translate them into HTTP responses.
"Already processed" is deliberately not an exception: it is a successful
reconciliation result (see ReconciliationResult in webhook_service).
"""


class BillingError(Exception):
    """Base class for every billing-domain error."""


# --- Webhook verification ---

class VerificationError(BillingError):
    """Payload authenticity could not be established. Reject, do not process."""


class MissingSignature(VerificationError):
    pass


class InvalidSignature(VerificationError):
    pass


class WebhookConfigurationError(BillingError):
    """The webhook secret is not configured on this server."""


class MalformedPayload(BillingError):
    """Body is not a valid event envelope. Never recorded in the ledger."""


# --- Reconciliation ---

class TransientFailure(BillingError):
    """Retryable failure (database, timeout). The provider should redeliver."""


class UnknownCustomer(TransientFailure):
    """No local user for the event's customer yet.

    Usually the linking checkout.completed event has not arrived; a later
    redelivery succeeds once it has.
    """


# --- Checkout / portal ---

class BusinessConflict(BillingError):
    """Request conflicts with existing billing state (e.g. already subscribed)."""

    def __init__(self, message, management_url=None):
        super().__init__(message)
        self.management_url = management_url


class InvalidCheckoutRequest(BillingError):
    """Unknown tier, unsupported mode, or no product mapped for the request."""


class NoBillingCustomer(BillingError):
    """The user has no provider customer reference yet."""


class ProviderError(BillingError):
    """The remote payment provider failed or returned an unusable response."""


# --- Credits ---

class InsufficientCredits(BillingError):
    pass
