"""
Billing models for the NICNOA pricing system.

Key design decisions:
- Plan and CreditPackage are operator-owned catalog rows; Stripe Products and
  Prices are created from them by the catalog synchronizer, never by hand
- Stripe references are write-once: a sold Price is never mutated, a price
  change means a new plan (or a new Price on a fresh column)
- Subscription is a read model mirrored from Stripe webhooks, never written
  by request handlers
- Every applied webhook event is recorded so redeliveries are no-ops

Relationship: User ──1:N── Subscription ──N:1── Plan
              User ──1:1── CreditBalance ──1:N── CreditTransaction
"""

from __future__ import annotations

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from model_utils.models import TimeStampedModel

from nicnoa.billing.constants import ENTITLED_STATUSES
from nicnoa.billing.constants import BillingInterval
from nicnoa.billing.constants import CreditTransactionType
from nicnoa.billing.constants import PlanType
from nicnoa.billing.constants import SubscriptionStatus
from nicnoa.billing.pricing import PRICE_FIELDS
from nicnoa.billing.pricing import STRIPE_PRICE_FIELDS
from nicnoa.billing.pricing import price_for_interval
from nicnoa.billing.refs import ExternalRef
from nicnoa.billing.refs import Synced
from nicnoa.billing.refs import ref_from_column


def _field_value(instance, field_name: str):
    """Current value coerced the way the column stores it ("29.00" becomes a Decimal)."""
    field = instance._meta.get_field(field_name)
    return field.to_python(getattr(instance, field_name))


def _check_write_once(instance, ref_to_amount: dict[str, str | None]) -> None:
    """
    Enforce write-once Stripe references against the stored row.

    ``ref_to_amount`` maps each reference column to the local price column it
    was created from (None for the product column). A set reference may not
    change, and the price it was created from may not change either.
    """
    if instance._state.adding or instance.pk is None:
        return

    columns = [*ref_to_amount, *(a for a in ref_to_amount.values() if a)]
    stored = type(instance).objects.filter(pk=instance.pk).values(*columns).first()
    if stored is None:
        return

    errors = {}
    for ref_field, amount_field in ref_to_amount.items():
        old_ref = stored[ref_field]
        if not old_ref:
            continue
        if getattr(instance, ref_field) != old_ref:
            errors[ref_field] = "Stripe references cannot be changed once set."
        elif amount_field and _field_value(instance, amount_field) != stored[amount_field]:
            errors[amount_field] = (
                "This price is already live in Stripe. Create a new plan "
                "instead of changing a sold price."
            )
    if errors:
        raise ValidationError(errors)


class PlanQuerySet(models.QuerySet):
    def active(self):
        return self.filter(is_active=True)

    def for_price(self, price_id: str):
        """Plans that own the given Stripe Price ID on any interval."""
        query = Q()
        for field in STRIPE_PRICE_FIELDS.values():
            query |= Q(**{field: price_id})
        return self.filter(query)


class Plan(TimeStampedModel):
    """
    A recurring offering sold at up to four billing intervals.

    Each interval has its own local price and, once synchronized, its own
    Stripe Price. The four prices are independent; nothing requires the
    yearly price to equal twelve monthly payments.

    Usage:
        plan.price_ref(BillingInterval.YEARLY)   # Synced(...) or Unsynced()
        savings_percent(plan, BillingInterval.YEARLY)
    """

    name = models.CharField(max_length=100, help_text="Display name for the plan.")
    slug = models.SlugField(max_length=100, unique=True)
    description = models.TextField(
        blank=True,
        help_text="Marketing description shown on the pricing page.",
    )
    plan_type = models.CharField(
        max_length=20,
        choices=PlanType.choices,
        default=PlanType.STYLIST,
    )

    # Prices in EUR, one per interval. 0 = not sold at this interval.
    price_monthly = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    price_quarterly = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    price_six_months = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    price_yearly = models.DecimalField(max_digits=10, decimal_places=2, default=0)

    is_active = models.BooleanField(
        default=True,
        help_text="Inactive plans stay attached to existing subscribers but are not sold.",
    )
    trial_days = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Free trial length for new subscribers. Empty = no trial.",
    )
    included_credits = models.PositiveIntegerField(
        default=0,
        help_text="AI credits included per billing period.",
    )

    # Display
    features = models.JSONField(default=list, blank=True)
    is_popular = models.BooleanField(default=False)
    sort_order = models.IntegerField(default=0)

    # Stripe catalog references (blank = not yet synced, write-once)
    stripe_product_id = models.CharField(max_length=255, blank=True)
    stripe_price_monthly = models.CharField(max_length=255, blank=True)
    stripe_price_quarterly = models.CharField(max_length=255, blank=True)
    stripe_price_six_months = models.CharField(max_length=255, blank=True)
    stripe_price_yearly = models.CharField(max_length=255, blank=True)

    objects = PlanQuerySet.as_manager()

    class Meta:
        ordering = ["plan_type", "sort_order"]

    def __str__(self) -> str:
        return self.name

    @property
    def product_ref(self) -> ExternalRef:
        return ref_from_column(self.stripe_product_id)

    def price_ref(self, interval: BillingInterval) -> ExternalRef:
        return ref_from_column(getattr(self, STRIPE_PRICE_FIELDS[interval]))

    @property
    def sellable_intervals(self) -> list[BillingInterval]:
        """Intervals with a positive local price."""
        return [i for i in BillingInterval if price_for_interval(self, i) > 0]

    @property
    def needs_sync(self) -> bool:
        if not isinstance(self.product_ref, Synced):
            return True
        return any(
            not isinstance(self.price_ref(i), Synced) for i in self.sellable_intervals
        )

    def write_once_fields(self) -> dict[str, str | None]:
        """Stripe reference column -> the local price column it was created from."""
        refs = {"stripe_product_id": None}
        for interval, ref_field in STRIPE_PRICE_FIELDS.items():
            refs[ref_field] = PRICE_FIELDS[interval]
        return refs

    def clean(self):
        super().clean()
        _check_write_once(self, self.write_once_fields())
        errors = {}
        for interval, ref_field in STRIPE_PRICE_FIELDS.items():
            amount = getattr(self, PRICE_FIELDS[interval])
            if amount is not None and amount < 0:
                errors[PRICE_FIELDS[interval]] = "Prices cannot be negative."
            elif isinstance(self.price_ref(interval), Synced) and not amount:
                errors[ref_field] = "A Stripe price requires a positive local price."
        if errors:
            raise ValidationError(errors)

    def save(self, *args, **kwargs):
        _check_write_once(self, self.write_once_fields())
        super().save(*args, **kwargs)


class CreditPackageQuerySet(models.QuerySet):
    def active(self):
        return self.filter(is_active=True)


class CreditPackage(TimeStampedModel):
    """
    A one-time purchasable bundle of AI credits.

    Buying a package grants ``credits + bonus_credits``.
    """

    name = models.CharField(max_length=100)
    description = models.TextField(blank=True)
    credits = models.PositiveIntegerField()
    bonus_credits = models.PositiveIntegerField(default=0)
    price_eur = models.DecimalField(max_digits=10, decimal_places=2)
    is_active = models.BooleanField(default=True)
    sort_order = models.IntegerField(default=0)

    # Stripe catalog references (blank = not yet synced, write-once)
    stripe_product_id = models.CharField(max_length=255, blank=True)
    stripe_price_id = models.CharField(max_length=255, blank=True)

    objects = CreditPackageQuerySet.as_manager()

    class Meta:
        ordering = ["sort_order"]

    def __str__(self) -> str:
        return self.name

    @property
    def total_credits(self) -> int:
        return self.credits + (self.bonus_credits or 0)

    @property
    def product_ref(self) -> ExternalRef:
        return ref_from_column(self.stripe_product_id)

    @property
    def price_ref(self) -> ExternalRef:
        return ref_from_column(self.stripe_price_id)

    @property
    def needs_sync(self) -> bool:
        return not isinstance(self.price_ref, Synced) and self.price_eur > 0

    @property
    def default_description(self) -> str:
        if self.bonus_credits:
            return f"{self.credits} Credits + {self.bonus_credits} Bonus"
        return f"{self.credits} Credits"

    def write_once_fields(self) -> dict[str, str | None]:
        return {"stripe_product_id": None, "stripe_price_id": "price_eur"}

    def clean(self):
        super().clean()
        _check_write_once(self, self.write_once_fields())

    def save(self, *args, **kwargs):
        _check_write_once(self, self.write_once_fields())
        super().save(*args, **kwargs)


class Subscription(TimeStampedModel):
    """
    Local mirror of a Stripe subscription.

    Written only by webhook handlers. ``last_event_at`` is the creation time
    of the newest Stripe event applied to this row; older events are ignored
    so out-of-order redeliveries never regress the state.
    """

    account = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="subscriptions",
    )
    plan = models.ForeignKey(
        Plan,
        on_delete=models.PROTECT,  # Deactivate plans with subscribers, never delete
        null=True,
        blank=True,
        related_name="subscriptions",
    )
    interval = models.CharField(
        max_length=20,
        choices=BillingInterval.choices,
        blank=True,
    )
    status = models.CharField(
        max_length=20,
        choices=SubscriptionStatus.choices,
        default=SubscriptionStatus.INCOMPLETE,
    )

    stripe_subscription_id = models.CharField(max_length=255, unique=True)
    stripe_customer_id = models.CharField(max_length=255, blank=True)
    stripe_price_id = models.CharField(max_length=255, blank=True)

    cancel_at_period_end = models.BooleanField(default=False)
    is_paused = models.BooleanField(default=False)
    current_period_end = models.DateTimeField(null=True, blank=True)
    trial_ends_at = models.DateTimeField(null=True, blank=True)

    last_event_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Creation time of the newest applied Stripe event.",
    )
    last_event_id = models.CharField(max_length=255, blank=True)

    class Meta:
        indexes = [
            models.Index(fields=["status"], name="billing_sub_status_idx"),
            models.Index(fields=["stripe_customer_id"], name="billing_sub_customer_idx"),
        ]

    def __str__(self) -> str:
        plan_name = self.plan.name if self.plan else self.stripe_price_id
        return f"{self.account} - {plan_name} ({self.status})"

    @property
    def is_entitled(self) -> bool:
        return self.status in ENTITLED_STATUSES and not self.is_paused


class ProcessedWebhookEvent(TimeStampedModel):
    """Ledger of applied Stripe events. A second delivery of an id is skipped."""

    stripe_event_id = models.CharField(max_length=255, unique=True)
    event_type = models.CharField(max_length=100)
    event_created = models.DateTimeField()

    class Meta:
        ordering = ["-event_created"]

    def __str__(self) -> str:
        return f"{self.event_type} ({self.stripe_event_id})"


class CreditBalance(TimeStampedModel):
    """Consumable AI credit balance for an account."""

    account = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="credit_balance",
    )
    balance = models.IntegerField(default=0)
    lifetime_bought = models.IntegerField(default=0)
    last_top_up_at = models.DateTimeField(null=True, blank=True)

    def __str__(self) -> str:
        return f"{self.account}: {self.balance} credits"


class CreditTransaction(TimeStampedModel):
    """
    Audit trail for credit balance changes.

    Purchases carry the checkout session ID, which is unique, so a credit
    purchase can be granted at most once.
    """

    account = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="credit_transactions",
    )
    transaction_type = models.CharField(
        max_length=20,
        choices=CreditTransactionType.choices,
    )
    amount = models.IntegerField(help_text="Credits added (positive) or used (negative).")
    balance_before = models.IntegerField()
    balance_after = models.IntegerField()
    package = models.ForeignKey(
        CreditPackage,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="transactions",
    )
    stripe_checkout_session_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
    )
    stripe_payment_intent_id = models.CharField(max_length=255, blank=True)
    description = models.CharField(max_length=255, blank=True)

    class Meta:
        ordering = ["-created"]

    def __str__(self) -> str:
        return f"{self.account}: {self.amount:+d} credits"
