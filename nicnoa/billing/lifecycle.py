"""
Subscription lifecycle requests against Stripe.

Every operation here is a request to Stripe and nothing else. The local
Subscription mirror is never written from this module; it changes when
Stripe echoes the transition back as a webhook (see ``webhooks``). A
request that succeeds here but whose webhook never arrives leaves the
mirror on the old state, which is the correct view until Stripe confirms.

Transitions:
- cancel: cancel at period end, access continues until the boundary
- cancel_immediately: terminal now
- pause / resume: suspend invoicing (``pause_collection`` behavior void)
  without ending the subscription, and undo it
- change_plan: swap the single item's price with proration

References:
- https://docs.stripe.com/billing/subscriptions/cancel
- https://docs.stripe.com/billing/subscriptions/pause-payment
- https://docs.stripe.com/billing/subscriptions/upgrade-downgrade
"""

from __future__ import annotations

import logging

from nicnoa.billing.exceptions import ConfigurationError
from nicnoa.billing.exceptions import NotFoundError
from nicnoa.billing.gateway import StripeGateway
from nicnoa.billing.gateway import get_gateway
from nicnoa.billing.models import Plan
from nicnoa.billing.pricing import normalize_interval
from nicnoa.billing.refs import Synced
from nicnoa.billing.refs import Unsynced

logger = logging.getLogger(__name__)

PRORATION_BEHAVIOR = "create_prorations"


def single_item_id(stripe_subscription) -> str:
    """
    ID of the one subscription item we sell per subscription.

    Raises:
        ConfigurationError: If the subscription does not have exactly one item
    """
    items = stripe_subscription["items"]["data"]
    if len(items) != 1:
        msg = (
            f"Subscription {stripe_subscription['id']} has {len(items)} items, "
            "expected exactly one"
        )
        raise ConfigurationError(msg)
    return items[0]["id"]


class SubscriptionLifecycle:
    """
    Request lifecycle transitions for a Stripe subscription.

    Usage:
        lifecycle = SubscriptionLifecycle()
        lifecycle.cancel("sub_123")
        lifecycle.change_plan_to("sub_123", plan.pk, BillingInterval.YEARLY)
    """

    def __init__(self, gateway: StripeGateway | None = None):
        self.gateway = gateway or get_gateway()

    def cancel(self, subscription_id: str):
        """Cancel at the end of the current period."""
        subscription = self.gateway.update_subscription(
            subscription_id,
            {"cancel_at_period_end": True},
        )
        logger.info("Requested cancel at period end for %s", subscription_id)
        return subscription

    def cancel_immediately(self, subscription_id: str):
        subscription = self.gateway.cancel_subscription(subscription_id)
        logger.info("Canceled subscription %s immediately", subscription_id)
        return subscription

    def pause(self, subscription_id: str):
        """Stop invoicing. Invoices that would be created are voided."""
        subscription = self.gateway.update_subscription(
            subscription_id,
            {"pause_collection": {"behavior": "void"}},
        )
        logger.info("Paused collection for %s", subscription_id)
        return subscription

    def resume(self, subscription_id: str):
        # An empty string unsets pause_collection
        subscription = self.gateway.update_subscription(
            subscription_id,
            {"pause_collection": ""},
        )
        logger.info("Resumed collection for %s", subscription_id)
        return subscription

    def change_plan(self, subscription_id: str, new_price_id: str):
        """
        Replace the subscription's price, prorating the current period.

        Unused time on the old price is credited and the remaining time on
        the new price is charged. When that is collected is Stripe's
        configuration, not ours.
        """
        current = self.gateway.retrieve_subscription(subscription_id)
        item_id = single_item_id(current)

        subscription = self.gateway.update_subscription(
            subscription_id,
            {
                "items": [{"id": item_id, "price": new_price_id}],
                "proration_behavior": PRORATION_BEHAVIOR,
            },
        )
        logger.info(
            "Requested plan change for %s to price %s",
            subscription_id,
            new_price_id,
        )
        return subscription

    def change_plan_to(self, subscription_id: str, plan_id: int, interval):
        """
        Change to a plan and interval, resolving the Stripe Price locally.

        Raises:
            NotFoundError: If the plan does not exist
            ConfigurationError: If the interval has no Stripe Price
        """
        return self.change_plan(subscription_id, resolve_price_id(plan_id, interval))


def resolve_price_id(plan_id: int, interval) -> str:
    """Stripe Price ID for a plan and interval, or a configuration error."""
    plan = Plan.objects.filter(pk=plan_id).first()
    if plan is None:
        msg = f"Plan {plan_id} not found"
        raise NotFoundError(msg)

    interval = normalize_interval(interval)
    match plan.price_ref(interval):
        case Synced(external_id=price_id):
            return price_id
        case Unsynced():
            msg = f"Plan {plan.slug} has no Stripe price for {interval.label}"
            raise ConfigurationError(msg)
