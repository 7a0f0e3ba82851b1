"""
External catalog references.

A Plan column like ``stripe_price_monthly`` is either blank (nothing created
in Stripe yet) or holds the Stripe id. Rather than branching on empty
strings, callers get an explicit variant and match on it:

    match plan.price_ref(BillingInterval.YEARLY):
        case Synced(external_id=price_id):
            ...
        case Unsynced():
            ...
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Unsynced:
    """No Stripe object exists for this reference yet."""


@dataclass(frozen=True)
class Synced:
    """A Stripe object exists; its id is immutable."""

    external_id: str


ExternalRef = Unsynced | Synced

UNSYNCED = Unsynced()


def ref_from_column(value: str | None) -> ExternalRef:
    """Build a reference from a stored column value (blank/None = unsynced)."""
    if value:
        return Synced(value)
    return UNSYNCED
