"""
Proration preview for plan and interval changes.

Asks Stripe to simulate the invoice a plan change would produce, without
changing the subscription. Safe to call as often as the plan selector in the
UI changes.

The simulated invoice has two kinds of lines:
- Proration lines: credit for unused time on the old price (negative) and
  the charge for the remaining time on the new price (positive). Their sum
  is ``immediate``; positive means the customer owes money
- Regular lines: the steady-state amount of the new price. Their sum is
  ``next_invoice``

All amounts are integer minor units as Stripe returns them, so we never
round money ourselves.

References:
- https://docs.stripe.com/billing/subscriptions/prorations#preview-proration
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from django.conf import settings
from django.utils import timezone

from nicnoa.billing.exceptions import BillingError
from nicnoa.billing.exceptions import ProrationPreviewError
from nicnoa.billing.gateway import StripeGateway
from nicnoa.billing.gateway import get_gateway
from nicnoa.billing.lifecycle import PRORATION_BEHAVIOR
from nicnoa.billing.lifecycle import single_item_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProrationPreview:
    """Estimated cost of a plan change at ``cutover``."""

    immediate: int
    next_invoice: int
    cutover: datetime
    currency: str

    def as_dict(self) -> dict:
        return {
            "immediate": self.immediate,
            "next_invoice": self.next_invoice,
            "cutover": self.cutover.isoformat(),
            "currency": self.currency,
        }


def is_proration_line(line) -> bool:
    """
    Whether an invoice line is a proration adjustment.

    Older API versions flag the line itself; newer ones moved the flag to
    the line's parent details.
    """
    if "proration" in line:
        return bool(line["proration"])
    parent = line.get("parent") or {}
    details = (
        parent.get("subscription_item_details")
        or parent.get("invoice_item_details")
        or {}
    )
    return bool(details.get("proration"))


class ProrationCalculator:
    """
    Preview what switching a subscription to another price would cost.

    Usage:
        calculator = ProrationCalculator()
        preview = calculator.preview("sub_123", "price_yearly")
        preview.immediate     # cents due for the rest of this period
        preview.next_invoice  # cents of the next regular invoice
    """

    def __init__(self, gateway: StripeGateway | None = None):
        self.gateway = gateway or get_gateway()

    def preview(self, subscription_id: str, new_price_id: str) -> ProrationPreview:
        """
        Simulate the change at the current instant.

        Raises:
            ProrationPreviewError: If Stripe cannot simulate the invoice for
                this subscription
        """
        # Stripe accepts whole seconds as the proration date
        cutover = timezone.now().replace(microsecond=0)

        try:
            subscription = self.gateway.retrieve_subscription(subscription_id)
            item_id = single_item_id(subscription)
            invoice = self.gateway.preview_invoice(
                {
                    "customer": subscription["customer"],
                    "subscription": subscription_id,
                    "subscription_details": {
                        "items": [{"id": item_id, "price": new_price_id}],
                        "proration_date": int(cutover.timestamp()),
                        "proration_behavior": PRORATION_BEHAVIOR,
                    },
                },
            )
        except BillingError as e:
            msg = f"Could not preview proration for {subscription_id}"
            raise ProrationPreviewError(msg) from e

        immediate = 0
        next_invoice = 0
        try:
            for line in invoice["lines"]["data"]:
                if is_proration_line(line):
                    immediate += line["amount"]
                else:
                    next_invoice += line["amount"]
        except (KeyError, TypeError) as e:
            msg = f"Unexpected preview invoice shape for {subscription_id}"
            raise ProrationPreviewError(msg) from e

        return ProrationPreview(
            immediate=immediate,
            next_invoice=next_invoice,
            cutover=cutover,
            currency=invoice.get("currency") or settings.BILLING_CURRENCY,
        )

    def preview_or_none(
        self,
        subscription_id: str,
        new_price_id: str,
    ) -> ProrationPreview | None:
        """Like ``preview`` but returns None on failure so the UI shows no estimate."""
        try:
            return self.preview(subscription_id, new_price_id)
        except ProrationPreviewError:
            logger.warning(
                "Proration preview unavailable for %s",
                subscription_id,
                exc_info=True,
            )
            return None
