"""
Billing exceptions.

Library code raises these; the request layer maps them to responses:

- NotFoundError         → 404, never retried
- ConfigurationError    → 409, remedy is "sync the catalog" or "set a price"
- RemoteTransientError  → 503, safe to retry for reads and idempotent writes
- GatewayError          → 502, Stripe rejected the request
- SignatureInvalidError → bare 400 to the webhook sender
- ProrationPreviewError → soft, the UI shows no estimate
- InsufficientCreditsError → 402, the account must buy credits first
"""


class BillingError(Exception):
    """Base exception for billing errors."""


class NotFoundError(BillingError):
    """A referenced plan, package, account or subscription does not exist."""


class ConfigurationError(BillingError):
    """A required Stripe reference is missing or the item is not for sale."""


class GatewayError(BillingError):
    """Stripe rejected a request."""


class RemoteTransientError(GatewayError):
    """Network failure, rate limit or Stripe 5xx."""


class SignatureInvalidError(BillingError):
    """Webhook payload failed signature verification."""


class ProrationPreviewError(BillingError):
    """Stripe could not simulate the plan change invoice."""


class InsufficientCreditsError(BillingError):
    """The credit balance does not cover the requested usage."""
