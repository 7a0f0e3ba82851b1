"""
Billing constants for the pricing system.

These enums define the plan categories, billing intervals and subscription
lifecycle states used throughout the billing module. Values are stored in
the database and sent to Stripe as metadata, so never rename a value.
"""

from django.db import models
from django.utils.translation import gettext_lazy as _


class PlanType(models.TextChoices):
    """
    Plan category.

    STYLIST plans are single-seat plans for self-employed stylists.
    SALON_OWNER plans are organization plans for salons renting out chairs.
    """

    STYLIST = "STYLIST", _("Stylist")
    SALON_OWNER = "SALON_OWNER", _("Salon owner")


class BillingInterval(models.TextChoices):
    """Billing intervals a plan can be sold at. Each has its own Stripe Price."""

    MONTHLY = "MONTHLY", _("Monthly")
    QUARTERLY = "QUARTERLY", _("Quarterly")
    SIX_MONTHS = "SIX_MONTHS", _("Six months")
    YEARLY = "YEARLY", _("Yearly")


class SubscriptionStatus(models.TextChoices):
    """
    Subscription lifecycle states, mirrored from Stripe.

    The local mirror only changes through verified webhook events:
        INCOMPLETE → ACTIVE (first payment succeeds)
        INCOMPLETE → INCOMPLETE_EXPIRED (first payment never succeeds)
        TRIALING → ACTIVE (trial converts)
        ACTIVE → PAST_DUE (payment failed) → UNPAID / CANCELED
        ACTIVE ↔ PAUSED (pause_collection set / cleared)
        ACTIVE → CANCELED (period end after cancel, or immediate cancel)
    """

    TRIALING = "trialing", _("Trial")
    ACTIVE = "active", _("Active")
    PAST_DUE = "past_due", _("Past due")
    PAUSED = "paused", _("Paused")
    CANCELED = "canceled", _("Canceled")
    INCOMPLETE = "incomplete", _("Incomplete")
    INCOMPLETE_EXPIRED = "incomplete_expired", _("Incomplete (expired)")
    UNPAID = "unpaid", _("Unpaid")


class CreditTransactionType(models.TextChoices):
    PURCHASE = "purchase", _("Purchase")
    USAGE = "usage", _("Usage")
    ADJUSTMENT = "adjustment", _("Adjustment")


# Statuses that grant access to paid features
ENTITLED_STATUSES = frozenset(
    {
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
    },
)

# Checkout metadata "type" values, round-tripped through webhooks
CHECKOUT_TYPE_SUBSCRIPTION = "subscription"
CHECKOUT_TYPE_CREDIT_PURCHASE = "credit_purchase"
