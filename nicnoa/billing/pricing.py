"""
Pricing model for subscription plans.

Pure functions, no I/O. A plan stores one price per billing interval; the
four prices are set independently by operators and are not required to be
consistent with each other (a yearly price is usually discounted against
twelve monthly payments, but nothing enforces that).

All money is ``Decimal``. Anything sent to Stripe goes through
``to_minor_units`` first so we never hand a float to the gateway.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP
from decimal import Decimal
from typing import TYPE_CHECKING

from nicnoa.billing.constants import BillingInterval

if TYPE_CHECKING:
    from nicnoa.billing.models import Plan

CENT = Decimal("0.01")

# Plan model field holding the price for each interval
PRICE_FIELDS = {
    BillingInterval.MONTHLY: "price_monthly",
    BillingInterval.QUARTERLY: "price_quarterly",
    BillingInterval.SIX_MONTHS: "price_six_months",
    BillingInterval.YEARLY: "price_yearly",
}

# Plan model field holding the Stripe Price ID for each interval
STRIPE_PRICE_FIELDS = {
    BillingInterval.MONTHLY: "stripe_price_monthly",
    BillingInterval.QUARTERLY: "stripe_price_quarterly",
    BillingInterval.SIX_MONTHS: "stripe_price_six_months",
    BillingInterval.YEARLY: "stripe_price_yearly",
}

MONTHS = {
    BillingInterval.MONTHLY: 1,
    BillingInterval.QUARTERLY: 3,
    BillingInterval.SIX_MONTHS: 6,
    BillingInterval.YEARLY: 12,
}


def normalize_interval(interval) -> BillingInterval:
    """
    Coerce a value to a BillingInterval.

    Accepts enum members and their string values (case-insensitive).
    Anything unrecognized falls back to MONTHLY.
    """
    if isinstance(interval, BillingInterval):
        return interval
    try:
        return BillingInterval(str(interval).upper())
    except ValueError:
        return BillingInterval.MONTHLY


def price_for_interval(plan: Plan, interval) -> Decimal:
    """Stored price for the interval; unknown intervals use the monthly price."""
    field = PRICE_FIELDS[normalize_interval(interval)]
    return Decimal(getattr(plan, field) or 0)


def months_for_interval(interval) -> int:
    return MONTHS[normalize_interval(interval)]


def monthly_equivalent(plan: Plan, interval) -> Decimal:
    """Interval price spread over its months, rounded to the cent."""
    months = months_for_interval(interval)
    amount = price_for_interval(plan, interval) / months
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def savings_percent(plan: Plan, interval) -> int:
    """
    Percentage saved by paying per interval instead of monthly.

    Compares the interval price against ``months`` monthly payments. Never
    negative: an interval priced above the monthly baseline shows 0%, and a
    plan without a monthly price has no baseline to save against.
    """
    months = months_for_interval(interval)
    baseline = price_for_interval(plan, BillingInterval.MONTHLY) * months
    if baseline <= 0:
        return 0

    saved = baseline - price_for_interval(plan, interval)
    percent = (Decimal(100) * saved / baseline).quantize(
        Decimal(1),
        rounding=ROUND_HALF_UP,
    )
    return max(0, int(percent))


def to_minor_units(amount) -> int:
    """Convert a decimal amount in EUR to integer cents (half-up)."""
    return int((Decimal(amount) * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def recurring_for_interval(interval) -> dict:
    """Stripe ``recurring`` parameters for a billing interval."""
    interval = normalize_interval(interval)
    if interval == BillingInterval.YEARLY:
        return {"interval": "year", "interval_count": 1}
    return {"interval": "month", "interval_count": MONTHS[interval]}


def interval_for_price(plan: Plan, price_id: str | None) -> BillingInterval | None:
    """Which interval of ``plan`` a Stripe Price ID belongs to, if any."""
    if not price_id:
        return None
    for interval, field in STRIPE_PRICE_FIELDS.items():
        if getattr(plan, field) == price_id:
            return interval
    return None
