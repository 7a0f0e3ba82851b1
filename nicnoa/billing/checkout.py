"""
Checkout and portal session creation.

We use Stripe Checkout (not custom payment forms) for PCI compliance and the
Stripe Customer Portal for self-service management.

Checkout never synchronizes the catalog on its own. If the plan or package
has no Stripe Price yet, it raises ``ConfigurationError`` and the operator
runs a sync first. That keeps the side effects of a "buy" click limited to
one checkout session.

Sessions are not persisted locally: the metadata we attach here (account,
plan, interval, credits) is echoed back on ``checkout.session.completed``
and the webhook reconciler does the bookkeeping.
"""

from __future__ import annotations

import logging

from django.conf import settings

from nicnoa.billing.constants import CHECKOUT_TYPE_CREDIT_PURCHASE
from nicnoa.billing.constants import CHECKOUT_TYPE_SUBSCRIPTION
from nicnoa.billing.exceptions import ConfigurationError
from nicnoa.billing.exceptions import NotFoundError
from nicnoa.billing.gateway import StripeGateway
from nicnoa.billing.gateway import get_gateway
from nicnoa.billing.models import CreditPackage
from nicnoa.billing.models import Plan
from nicnoa.billing.pricing import normalize_interval
from nicnoa.billing.refs import Synced
from nicnoa.billing.refs import Unsynced

logger = logging.getLogger(__name__)


class CheckoutService:
    """
    Build Stripe Checkout and Customer Portal sessions.

    Usage:
        service = CheckoutService()
        session = service.create_subscription_checkout(
            customer_id="cus_123",
            plan_id=plan.pk,
            interval=BillingInterval.YEARLY,
            success_url="https://app.nicnoa.de/billing/success/",
            cancel_url="https://app.nicnoa.de/billing/",
            account_id=user.pk,
        )
        return redirect(session["url"])
    """

    def __init__(self, gateway: StripeGateway | None = None):
        self.gateway = gateway or get_gateway()

    def create_subscription_checkout(
        self,
        customer_id: str,
        plan_id: int,
        interval,
        success_url: str,
        cancel_url: str,
        *,
        account_id: int,
    ):
        """
        Create a subscription-mode checkout session for one unit of the plan.

        Raises:
            NotFoundError: If the plan does not exist
            ConfigurationError: If the plan is inactive or the interval has
                no Stripe Price (sync the catalog first)
        """
        plan = Plan.objects.filter(pk=plan_id).first()
        if plan is None:
            msg = f"Plan {plan_id} not found"
            raise NotFoundError(msg)
        if not plan.is_active:
            msg = f"Plan {plan.slug} is not available for purchase"
            raise ConfigurationError(msg)

        interval = normalize_interval(interval)
        match plan.price_ref(interval):
            case Synced(external_id=price_id):
                pass
            case Unsynced():
                msg = (
                    f"Plan {plan.slug} has no Stripe price for {interval.label}. "
                    "Sync the catalog first."
                )
                raise ConfigurationError(msg)

        metadata = {
            "type": CHECKOUT_TYPE_SUBSCRIPTION,
            "account_id": str(account_id),
            "plan_id": str(plan.pk),
            "interval": interval.value,
        }
        subscription_data: dict = {"metadata": metadata}
        if plan.trial_days:
            subscription_data["trial_period_days"] = plan.trial_days

        session = self.gateway.create_checkout_session(
            {
                "customer": customer_id,
                "mode": "subscription",
                "line_items": [{"price": price_id, "quantity": 1}],
                "success_url": success_url,
                "cancel_url": cancel_url,
                # The webhook reconciler uses this to find the account
                "client_reference_id": str(account_id),
                "metadata": metadata,
                "subscription_data": subscription_data,
                "allow_promotion_codes": True,
                # Tax and address collection so invoices are jurisdiction-correct
                "billing_address_collection": "required",
                "customer_update": {"address": "auto", "name": "auto"},
                "automatic_tax": {"enabled": True},
                "tax_id_collection": {"enabled": True},
                "locale": settings.BILLING_CHECKOUT_LOCALE,
            },
        )

        logger.info(
            "Created checkout session %s for account %s, plan %s, interval %s",
            session["id"],
            account_id,
            plan.slug,
            interval,
        )
        return session

    def create_credit_checkout(
        self,
        customer_id: str,
        package_id: int,
        success_url: str,
        cancel_url: str,
        *,
        account_id: int,
    ):
        """
        Create a one-time checkout session for a credit package.

        The session metadata carries the total credits to grant so the
        webhook reconciler does not need to look the package up again.
        """
        package = CreditPackage.objects.filter(pk=package_id).first()
        if package is None:
            msg = f"Credit package {package_id} not found"
            raise NotFoundError(msg)
        if not package.is_active:
            msg = f"Credit package {package.name} is not available for purchase"
            raise ConfigurationError(msg)

        match package.price_ref:
            case Synced(external_id=price_id):
                pass
            case Unsynced():
                msg = f"Credit package {package.name} has no Stripe price. Sync it first."
                raise ConfigurationError(msg)

        session = self.gateway.create_checkout_session(
            {
                "customer": customer_id,
                "mode": "payment",
                "line_items": [{"price": price_id, "quantity": 1}],
                "success_url": success_url,
                "cancel_url": cancel_url,
                "client_reference_id": str(account_id),
                "metadata": {
                    "type": CHECKOUT_TYPE_CREDIT_PURCHASE,
                    "account_id": str(account_id),
                    "package_id": str(package.pk),
                    "credits": str(package.total_credits),
                },
                "billing_address_collection": "required",
                "customer_update": {"address": "auto", "name": "auto"},
                "automatic_tax": {"enabled": True},
                "locale": settings.BILLING_CHECKOUT_LOCALE,
            },
        )

        logger.info(
            "Created credit checkout session %s for account %s, package %s",
            session["id"],
            account_id,
            package.pk,
        )
        return session

    def create_portal_session(self, customer_id: str, return_url: str):
        """
        Create a Stripe Customer Portal session.

        The portal lets customers update payment methods, view invoices and
        download receipts. No local state is touched.
        """
        session = self.gateway.create_portal_session(
            customer=customer_id,
            return_url=return_url,
        )
        logger.info("Created portal session for customer %s", customer_id)
        return session
