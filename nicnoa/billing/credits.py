"""
Credit balance operations and entitlement reads.

Every balance change goes through this module and runs under a row lock on
the account's CreditBalance, with a CreditTransaction written in the same
transaction. The balance never goes negative.

Three writers:
- grant_credits: a paid credit purchase, once per checkout session
- consume_credits: AI features spending credits
- adjust_credits: manual corrections by support staff

Entitlement combines the two sources of access: an entitled subscription
(which also carries the plan's included credits per period) and the
purchased credit balance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from django.db import transaction
from django.utils import timezone

from nicnoa.billing.constants import ENTITLED_STATUSES
from nicnoa.billing.constants import CreditTransactionType
from nicnoa.billing.exceptions import InsufficientCreditsError
from nicnoa.billing.models import CreditBalance
from nicnoa.billing.models import CreditTransaction
from nicnoa.billing.models import Subscription
from nicnoa.users.models import Role

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditEntitlement:
    """What an account may use right now."""

    has_subscription: bool
    subscription_status: str
    plan_name: str
    included_credits: int
    balance: int
    is_admin: bool

    @property
    def can_use_credits(self) -> bool:
        """Paid features need an entitled subscription (admins always pass)."""
        return self.is_admin or self.has_subscription

    def as_dict(self) -> dict:
        return {
            "can_use_credits": self.can_use_credits,
            "has_subscription": self.has_subscription,
            "subscription_status": self.subscription_status,
            "plan": self.plan_name,
            "included_credits": self.included_credits,
            "balance": self.balance,
        }


def credit_balance(account) -> int:
    """Current purchased credit balance, 0 if the account never bought any."""
    return (
        CreditBalance.objects.filter(account=account)
        .values_list("balance", flat=True)
        .first()
    ) or 0


def current_subscription(account) -> Subscription | None:
    """The account's newest subscription that grants access, if any."""
    return (
        Subscription.objects.filter(
            account=account,
            status__in=ENTITLED_STATUSES,
            is_paused=False,
        )
        .select_related("plan")
        .order_by("-created")
        .first()
    )


def included_credits(account) -> int:
    """Credits included per period by the plan of the entitled subscription."""
    subscription = current_subscription(account)
    if subscription is None or subscription.plan is None:
        return 0
    return subscription.plan.included_credits


def get_entitlement(account) -> CreditEntitlement:
    subscription = current_subscription(account)
    latest = (
        subscription
        or Subscription.objects.filter(account=account).order_by("-created").first()
    )
    plan = subscription.plan if subscription is not None else None
    return CreditEntitlement(
        has_subscription=subscription is not None,
        subscription_status=latest.status if latest is not None else "none",
        plan_name=plan.name if plan is not None else "",
        included_credits=plan.included_credits if plan is not None else 0,
        balance=credit_balance(account),
        is_admin=getattr(account, "role", None) == Role.ADMIN,
    )


def _locked_balance(account) -> CreditBalance:
    balance, _ = CreditBalance.objects.select_for_update().get_or_create(account=account)
    return balance


def grant_credits(
    *,
    account,
    credits: int,
    checkout_session_id: str,
    package_id=None,
    payment_intent_id: str = "",
) -> CreditTransaction | None:
    """
    Add purchased credits to the account, once per checkout session.

    Returns None if this session was already credited.
    """
    with transaction.atomic():
        if CreditTransaction.objects.filter(
            stripe_checkout_session_id=checkout_session_id,
        ).exists():
            logger.info("Credits for session %s already granted", checkout_session_id)
            return None

        balance = _locked_balance(account)
        before = balance.balance
        balance.balance = before + credits
        balance.lifetime_bought += credits
        balance.last_top_up_at = timezone.now()
        balance.save()

        entry = CreditTransaction.objects.create(
            account=account,
            transaction_type=CreditTransactionType.PURCHASE,
            amount=credits,
            balance_before=before,
            balance_after=balance.balance,
            package_id=package_id,
            stripe_checkout_session_id=checkout_session_id,
            stripe_payment_intent_id=payment_intent_id,
            description=f"Purchased {credits} credits",
        )
    logger.info(
        "Granted %d credits to account %s (session %s)",
        credits,
        account.pk,
        checkout_session_id,
    )
    return entry


def consume_credits(account, amount: int, *, description: str = "") -> CreditTransaction:
    """
    Spend ``amount`` credits from the account's balance.

    Raises:
        ValueError: If ``amount`` is not positive
        InsufficientCreditsError: If the balance does not cover ``amount``;
            nothing is written in that case
    """
    if amount <= 0:
        msg = f"Credit usage must be positive, got {amount}"
        raise ValueError(msg)

    with transaction.atomic():
        balance = _locked_balance(account)
        before = balance.balance
        if before < amount:
            msg = f"Account {account.pk} has {before} credits, {amount} required"
            raise InsufficientCreditsError(msg)
        balance.balance = before - amount
        balance.save(update_fields=["balance", "modified"])

        entry = CreditTransaction.objects.create(
            account=account,
            transaction_type=CreditTransactionType.USAGE,
            amount=-amount,
            balance_before=before,
            balance_after=balance.balance,
            description=description or f"Used {amount} credits",
        )
    logger.info("Account %s used %d credits (%d left)", account.pk, amount, balance.balance)
    return entry


def adjust_credits(account, amount: int, *, description: str) -> CreditTransaction:
    """
    Correct the balance by ``amount`` (positive or negative).

    Raises:
        ValueError: If ``amount`` is zero or ``description`` is empty
        InsufficientCreditsError: If a negative adjustment would overdraw
    """
    if amount == 0:
        msg = "Adjustment amount must not be zero"
        raise ValueError(msg)
    if not description:
        msg = "Adjustments need a description for the audit trail"
        raise ValueError(msg)

    with transaction.atomic():
        balance = _locked_balance(account)
        before = balance.balance
        if before + amount < 0:
            msg = f"Adjustment of {amount} would overdraw account {account.pk} ({before})"
            raise InsufficientCreditsError(msg)
        balance.balance = before + amount
        balance.save(update_fields=["balance", "modified"])

        entry = CreditTransaction.objects.create(
            account=account,
            transaction_type=CreditTransactionType.ADJUSTMENT,
            amount=amount,
            balance_before=before,
            balance_after=balance.balance,
            description=description,
        )
    logger.info("Adjusted credits of account %s by %+d: %s", account.pk, amount, description)
    return entry
