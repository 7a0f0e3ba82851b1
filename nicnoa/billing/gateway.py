"""
Stripe gateway client.

All Stripe traffic goes through a ``StripeGateway`` instance instead of the
module-level ``stripe.api_key`` global. The gateway is built once at app
startup from settings (see ``BillingConfig.ready``) and passed into each
service, so tests can hand services an in-memory fake instead.

The gateway owns three concerns:
- Credentials and per-request timeout / retry configuration
- Idempotency keys on creates, so retries never duplicate Stripe objects
- Translating Stripe SDK errors into billing exceptions

The SDK's ``StripeObject`` is not a dict (no ``.get()``, and attribute access
breaks on keys such as ``items``), so every response leaves the gateway as a
plain nested ``dict`` via ``to_plain``.
"""

from __future__ import annotations

import contextlib
import copy
import hashlib
import json
import logging
from datetime import datetime
from typing import Any

import stripe
from django.apps import apps
from django.conf import settings
from django.utils import timezone

from nicnoa.billing.exceptions import GatewayError
from nicnoa.billing.exceptions import NotFoundError
from nicnoa.billing.exceptions import RemoteTransientError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 20
DEFAULT_MAX_NETWORK_RETRIES = 2
HTTP_NOT_FOUND = 404


def idempotency_key(prefix: str, params: dict) -> str:
    """
    Stable key for a create request: same parameters, same key.

    Stripe rejects a reused key whose parameters differ, so the key must
    change whenever the parameters do.
    """
    digest = hashlib.sha256(
        json.dumps(params, sort_keys=True, default=str).encode(),
    ).hexdigest()[:32]
    return f"{prefix}-{digest}"


def to_plain(obj):
    """Recursive ``dict`` copy of an SDK response. Anything else passes through."""
    if isinstance(obj, stripe.StripeObject):
        return obj.to_dict()
    return obj


@contextlib.contextmanager
def translate_stripe_errors(action: str):
    """Re-raise Stripe SDK errors as billing exceptions."""
    try:
        yield
    except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
        logger.warning("Transient Stripe failure during %s: %s", action, e)
        msg = f"Stripe unavailable during {action}"
        raise RemoteTransientError(msg) from e
    except stripe.InvalidRequestError as e:
        if e.http_status == HTTP_NOT_FOUND:
            msg = f"Stripe object not found during {action}: {e.user_message or e}"
            raise NotFoundError(msg) from e
        logger.exception("Stripe rejected %s", action)
        msg = f"Stripe rejected {action}: {e.user_message or e}"
        raise GatewayError(msg) from e
    except stripe.StripeError as e:
        logger.exception("Stripe error during %s", action)
        msg = f"Stripe error during {action}: {e.user_message or e}"
        raise GatewayError(msg) from e


class StripeGateway:
    """
    Thin, injectable wrapper around ``stripe.StripeClient``.

    Usage:
        gateway = StripeGateway(api_key="sk_test_...", timeout=10)
        customer = gateway.create_customer(
            email="owner@salon.de",
            name="Salon Schnitt",
            metadata={"account_id": "42"},
            idempotency_key="customer-42",
        )
    """

    def __init__(
        self,
        api_key: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_network_retries: int = DEFAULT_MAX_NETWORK_RETRIES,
        api_version: str | None = None,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self.max_network_retries = max_network_retries
        self.api_version = api_version
        self.deadline: datetime | None = None
        self._client: stripe.StripeClient | None = None

    @classmethod
    def from_settings(cls) -> StripeGateway:
        return cls(
            api_key=settings.STRIPE_SECRET_KEY,
            timeout=settings.STRIPE_TIMEOUT_SECONDS,
            max_network_retries=settings.STRIPE_MAX_NETWORK_RETRIES,
            api_version=settings.STRIPE_API_VERSION or None,
        )

    def _build_client(self, timeout: float, max_network_retries: int) -> stripe.StripeClient:
        return stripe.StripeClient(
            self.api_key,
            stripe_version=self.api_version,
            max_network_retries=max_network_retries,
            http_client=stripe.RequestsClient(timeout=timeout),
        )

    @property
    def client(self) -> stripe.StripeClient:
        """Client for the next call, bounded by whatever is left of the deadline."""
        timeout, retries = self.call_limits()
        if (timeout, retries) != (self.timeout, self.max_network_retries):
            return self._build_client(timeout, retries)
        if self._client is None:
            self._client = self._build_client(timeout, retries)
        return self._client

    def with_deadline(self, deadline: datetime | None) -> StripeGateway:
        """
        Gateway whose calls all finish before ``deadline``.

        Request handlers pass their own deadline so a slow Stripe call can
        never outlive the request that started it. The remaining budget is
        recomputed before every call, so sequential calls share it.
        """
        if deadline is None:
            return self
        bounded = copy.copy(self)
        bounded.deadline = deadline
        return bounded

    def call_limits(self) -> tuple[float, int]:
        """
        Timeout and retry count for one call.

        The worst case of a call is ``timeout * (retries + 1)``. Retries are
        kept only while that still fits in the remaining budget; otherwise
        the call gets a single attempt capped at the remaining time.

        Raises:
            RemoteTransientError: If the deadline has already passed
        """
        if self.deadline is None:
            return self.timeout, self.max_network_retries
        remaining = (self.deadline - timezone.now()).total_seconds()
        if remaining <= 0:
            msg = "Request deadline exceeded before calling Stripe"
            raise RemoteTransientError(msg)
        if self.timeout * (self.max_network_retries + 1) <= remaining:
            return self.timeout, self.max_network_retries
        return min(self.timeout, remaining), 0

    # -- Customers -------------------------------------------------------

    def create_customer(
        self,
        *,
        email: str,
        name: str | None,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> dict:
        params: dict[str, Any] = {"email": email, "metadata": metadata}
        if name:
            params["name"] = name
        with translate_stripe_errors("customer creation"):
            customer = self.client.v1.customers.create(
                params,
                {"idempotency_key": idempotency_key},
            )
        return to_plain(customer)

    def find_customer_id(self, metadata_key: str, value: str) -> str | None:
        """Search for a customer tagged with ``metadata[metadata_key] == value``."""
        query = f"metadata['{metadata_key}']:'{value}'"
        with translate_stripe_errors("customer search"):
            result = self.client.v1.customers.search({"query": query, "limit": 1})
        data = to_plain(result)["data"]
        return data[0]["id"] if data else None

    # -- Catalog -----------------------------------------------------------

    def create_product(
        self,
        *,
        name: str,
        description: str | None,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> dict:
        params: dict[str, Any] = {"name": name, "metadata": metadata}
        if description:
            params["description"] = description
        with translate_stripe_errors("product creation"):
            product = self.client.v1.products.create(
                params,
                {"idempotency_key": idempotency_key},
            )
        return to_plain(product)

    def create_price(
        self,
        *,
        product: str,
        unit_amount: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
        recurring: dict | None = None,
    ) -> dict:
        params: dict[str, Any] = {
            "product": product,
            "unit_amount": unit_amount,
            "currency": currency,
            "metadata": metadata,
        }
        if recurring:
            params["recurring"] = recurring
        with translate_stripe_errors("price creation"):
            price = self.client.v1.prices.create(
                params,
                {"idempotency_key": idempotency_key},
            )
        return to_plain(price)

    def archive_product(self, product_id: str) -> None:
        with translate_stripe_errors("product archive"):
            self.client.v1.products.update(product_id, {"active": False})

    def archive_price(self, price_id: str) -> None:
        with translate_stripe_errors("price archive"):
            self.client.v1.prices.update(price_id, {"active": False})

    # -- Sessions ----------------------------------------------------------

    def create_checkout_session(self, params: dict) -> dict:
        with translate_stripe_errors("checkout session creation"):
            session = self.client.v1.checkout.sessions.create(params)
        return to_plain(session)

    def create_portal_session(self, *, customer: str, return_url: str) -> dict:
        with translate_stripe_errors("portal session creation"):
            session = self.client.v1.billing_portal.sessions.create(
                {"customer": customer, "return_url": return_url},
            )
        return to_plain(session)

    # -- Subscriptions -----------------------------------------------------

    def retrieve_subscription(self, subscription_id: str) -> dict:
        with translate_stripe_errors("subscription retrieval"):
            subscription = self.client.v1.subscriptions.retrieve(subscription_id)
        return to_plain(subscription)

    def update_subscription(self, subscription_id: str, params: dict) -> dict:
        with translate_stripe_errors("subscription update"):
            subscription = self.client.v1.subscriptions.update(subscription_id, params)
        return to_plain(subscription)

    def cancel_subscription(self, subscription_id: str) -> dict:
        with translate_stripe_errors("subscription cancellation"):
            subscription = self.client.v1.subscriptions.cancel(subscription_id)
        return to_plain(subscription)

    def preview_invoice(self, params: dict) -> dict:
        with translate_stripe_errors("invoice preview"):
            invoice = self.client.v1.invoices.create_preview(params)
        return to_plain(invoice)


def get_gateway() -> StripeGateway:
    """The process-wide gateway built by ``BillingConfig.ready``."""
    return apps.get_app_config("billing").gateway
