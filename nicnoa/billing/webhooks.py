"""
Stripe webhook verification and reconciliation.

Stripe is the source of truth for subscriptions and payments. The local
Subscription mirror and credit balances only change here, from verified
events, and every handler tolerates redelivery and reordering:

- Every applied event id is recorded in ProcessedWebhookEvent inside the
  same transaction as its handler. A redelivered event is a no-op, and a
  handler that fails rolls back the ledger row so Stripe's retry runs it
- Subscription handlers lock the mirror row and skip events created before
  the last applied one (last-write-wins by event time, not arrival order)
- Credit grants are keyed by checkout session, so a purchase is credited
  exactly once

Event kinds form a closed set. Anything else is logged and dropped.

Key events handled:
- checkout.session.completed: link a new subscription to its account, or
  grant purchased credits
- customer.subscription.created/updated/deleted/paused/resumed: mirror the
  subscription snapshot carried by the event
- customer.subscription.trial_will_end: notify (logged for now)
- invoice.finalized: logged so the invoice trail is visible
- invoice.paid / invoice.payment_failed: recover or start dunning

To test locally:
    stripe listen --forward-to localhost:8000/billing/webhook/
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC
from datetime import datetime
from enum import Enum

import stripe
from django.contrib.auth import get_user_model
from django.db import IntegrityError
from django.db import transaction

from nicnoa.billing.constants import CHECKOUT_TYPE_CREDIT_PURCHASE
from nicnoa.billing.constants import SubscriptionStatus
from nicnoa.billing.credits import grant_credits
from nicnoa.billing.exceptions import SignatureInvalidError
from nicnoa.billing.gateway import to_plain
from nicnoa.billing.models import CreditPackage
from nicnoa.billing.models import Plan
from nicnoa.billing.models import ProcessedWebhookEvent
from nicnoa.billing.models import Subscription
from nicnoa.billing.pricing import interval_for_price
from nicnoa.billing.pricing import normalize_interval

logger = logging.getLogger(__name__)


def verify_event(
    raw_body: bytes,
    signature_header: str | None,
    secret: str | None,
    *,
    tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
):
    """
    Verify a webhook payload and return the event as a plain dict.

    Fails closed: a missing secret or header, a bad signature, a timestamp
    outside ``tolerance`` or a malformed body all raise.

    Raises:
        SignatureInvalidError: If the payload cannot be trusted
    """
    if not secret:
        msg = "Webhook secret is not configured"
        raise SignatureInvalidError(msg)
    if not signature_header:
        msg = "Missing Stripe-Signature header"
        raise SignatureInvalidError(msg)

    try:
        event = stripe.Webhook.construct_event(
            raw_body,
            signature_header,
            secret,
            tolerance=tolerance,
        )
    except stripe.SignatureVerificationError as e:
        msg = "Webhook signature verification failed"
        raise SignatureInvalidError(msg) from e
    except ValueError as e:
        # Signed but not JSON (or not UTF-8)
        msg = "Malformed webhook payload"
        raise SignatureInvalidError(msg) from e
    return to_plain(event)


class WebhookEventKind(str, Enum):
    """Stripe event types we act on. Everything else is UNKNOWN."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    CHECKOUT_SESSION_ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_PAUSED = "customer.subscription.paused"
    SUBSCRIPTION_RESUMED = "customer.subscription.resumed"
    SUBSCRIPTION_TRIAL_WILL_END = "customer.subscription.trial_will_end"
    INVOICE_FINALIZED = "invoice.finalized"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    UNKNOWN = "unknown"

    @classmethod
    def from_type(cls, event_type: str) -> WebhookEventKind:
        try:
            return cls(event_type)
        except ValueError:
            return cls.UNKNOWN


class DispatchOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


def event_time(event) -> datetime:
    return datetime.fromtimestamp(event["created"], tz=UTC)


class WebhookRegistry:
    """
    Maps event kinds to handlers and applies each event at most once.

    Usage:
        registry = WebhookRegistry()

        @registry.register(WebhookEventKind.INVOICE_PAID)
        def handle_invoice_paid(event):
            ...

        registry.dispatch(verify_event(body, header, secret))
    """

    def __init__(self):
        self._handlers: dict[WebhookEventKind, Callable] = {}

    def register(self, *kinds: WebhookEventKind):
        def decorator(handler: Callable) -> Callable:
            for kind in kinds:
                self._handlers[kind] = handler
            return handler

        return decorator

    def handler_for(self, kind: WebhookEventKind) -> Callable | None:
        return self._handlers.get(kind)

    def dispatch(self, event) -> DispatchOutcome:
        # Handlers read events with dict access only
        event = to_plain(event)
        kind = WebhookEventKind.from_type(event["type"])
        handler = self.handler_for(kind)
        if handler is None:
            logger.info(
                "Dropping unhandled Stripe event %s (%s)",
                event["id"],
                event["type"],
            )
            return DispatchOutcome.IGNORED

        with transaction.atomic():
            _, created = ProcessedWebhookEvent.objects.get_or_create(
                stripe_event_id=event["id"],
                defaults={
                    "event_type": event["type"],
                    "event_created": event_time(event),
                },
            )
            if not created:
                logger.info("Skipping already processed event %s", event["id"])
                return DispatchOutcome.DUPLICATE

            handler(event)

        logger.info("Applied Stripe event %s (%s)", event["id"], event["type"])
        return DispatchOutcome.APPLIED


registry = WebhookRegistry()


# -- Helpers -----------------------------------------------------------------


def _id_of(value) -> str:
    """ID from a Stripe field that is either an ID string or an expanded object."""
    if not value:
        return ""
    if isinstance(value, str):
        return value
    return value["id"]


def _timestamp(value) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=UTC)


def _find_account(account_id=None, customer_id: str = ""):
    """Resolve the local account from metadata, falling back to the customer ID."""
    User = get_user_model()  # noqa: N806
    if account_id:
        account = User.objects.filter(pk=account_id).first()
        if account is not None:
            return account
    if customer_id:
        return User.objects.filter(stripe_customer_id=customer_id).first()
    return None


def _existing_package_id(value):
    """Package pk from metadata, or None if it was deleted since checkout."""
    if not value:
        return None
    return CreditPackage.objects.filter(pk=value).values_list("pk", flat=True).first()


def _invoice_subscription_id(invoice) -> str:
    # Newer API versions moved the subscription under parent details
    if invoice.get("subscription"):
        return _id_of(invoice["subscription"])
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _id_of(details.get("subscription"))


def _lock_or_create_mirror(subscription_id: str, account) -> Subscription:
    """Locked mirror row, inserting it first if this is the first event."""
    locked = Subscription.objects.select_for_update()
    mirror = locked.filter(stripe_subscription_id=subscription_id).first()
    if mirror is not None:
        return mirror
    try:
        with transaction.atomic():
            Subscription.objects.create(
                account=account,
                stripe_subscription_id=subscription_id,
            )
    except IntegrityError:
        # A concurrent delivery inserted it first
        pass
    return locked.get(stripe_subscription_id=subscription_id)


def _is_stale(mirror: Subscription, occurred_at: datetime) -> bool:
    return mirror.last_event_at is not None and occurred_at < mirror.last_event_at


def apply_subscription_snapshot(stripe_sub, event) -> Subscription | None:
    """
    Upsert the mirror from a subscription object carried by an event.

    Returns None when the subscription cannot be tied to a local account.
    """
    subscription_id = stripe_sub["id"]
    customer_id = _id_of(stripe_sub.get("customer"))
    metadata = stripe_sub.get("metadata") or {}
    occurred_at = event_time(event)

    mirror = (
        Subscription.objects.select_for_update()
        .filter(stripe_subscription_id=subscription_id)
        .first()
    )
    if mirror is None:
        account = _find_account(metadata.get("account_id"), customer_id)
        if account is None:
            logger.warning(
                "No account for Stripe subscription %s (customer %s)",
                subscription_id,
                customer_id,
            )
            return None
        mirror = _lock_or_create_mirror(subscription_id, account)

    if _is_stale(mirror, occurred_at):
        logger.info(
            "Ignoring stale event %s for %s (older than %s)",
            event["id"],
            subscription_id,
            mirror.last_event_id,
        )
        return mirror

    items = stripe_sub["items"]["data"] if stripe_sub.get("items") else []
    item = items[0] if items else {}
    price_id = _id_of(item.get("price")) if item else ""

    status = stripe_sub.get("status")
    if status in SubscriptionStatus.values:
        mirror.status = status
    else:
        logger.warning("Unknown Stripe subscription status %r on %s", status, subscription_id)

    plan = Plan.objects.for_price(price_id).first() if price_id else None
    if plan is None and metadata.get("plan_id"):
        plan = Plan.objects.filter(pk=metadata["plan_id"]).first()
    if plan is not None:
        mirror.plan = plan
        interval = interval_for_price(plan, price_id)
        if interval is None and metadata.get("interval"):
            interval = normalize_interval(metadata["interval"])
        if interval is not None:
            mirror.interval = interval

    mirror.stripe_customer_id = customer_id or mirror.stripe_customer_id
    mirror.stripe_price_id = price_id or mirror.stripe_price_id
    mirror.cancel_at_period_end = bool(stripe_sub.get("cancel_at_period_end"))
    mirror.is_paused = (
        bool(stripe_sub.get("pause_collection")) or status == SubscriptionStatus.PAUSED
    )
    # Period end moved from the subscription to its items in newer API versions
    mirror.current_period_end = _timestamp(
        stripe_sub.get("current_period_end") or item.get("current_period_end"),
    )
    mirror.trial_ends_at = _timestamp(stripe_sub.get("trial_end"))
    mirror.last_event_at = occurred_at
    mirror.last_event_id = event["id"]
    mirror.save()

    logger.info(
        "Mirrored subscription %s: status=%s, plan=%s",
        subscription_id,
        mirror.status,
        mirror.plan_id,
    )
    return mirror


def _apply_invoice_status(event, status: SubscriptionStatus, from_statuses) -> None:
    invoice = event["data"]["object"]
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        # One-time payment (credit purchase), nothing to mirror
        return

    mirror = (
        Subscription.objects.select_for_update()
        .filter(stripe_subscription_id=subscription_id)
        .first()
    )
    if mirror is None:
        logger.info(
            "%s for unknown subscription %s; waiting for subscription events",
            event["type"],
            subscription_id,
        )
        return

    occurred_at = event_time(event)
    if _is_stale(mirror, occurred_at):
        logger.info("Ignoring stale event %s for %s", event["id"], subscription_id)
        return
    if mirror.status not in from_statuses:
        return

    mirror.status = status
    mirror.last_event_at = occurred_at
    mirror.last_event_id = event["id"]
    mirror.save(update_fields=["status", "last_event_at", "last_event_id", "modified"])
    logger.info("Subscription %s is now %s after %s", subscription_id, status, event["type"])


# -- Handlers ----------------------------------------------------------------


@registry.register(
    WebhookEventKind.CHECKOUT_SESSION_COMPLETED,
    WebhookEventKind.CHECKOUT_SESSION_ASYNC_PAYMENT_SUCCEEDED,
)
def handle_checkout_completed(event):
    """
    Finish a checkout.

    Credit purchases are granted once payment has cleared. Subscription
    checkouts link the Stripe customer and subscription to the account; the
    subscription state itself comes from the customer.subscription events.
    """
    session = event["data"]["object"]
    metadata = session.get("metadata") or {}
    customer_id = _id_of(session.get("customer"))
    account = _find_account(
        metadata.get("account_id") or session.get("client_reference_id"),
        customer_id,
    )
    if account is None:
        logger.warning("Checkout session %s has no local account", session["id"])
        return

    if customer_id:
        # Same conditional write as the customer mapper: never overwrite
        type(account).objects.filter(
            pk=account.pk,
            stripe_customer_id__isnull=True,
        ).update(stripe_customer_id=customer_id)

    if metadata.get("type") == CHECKOUT_TYPE_CREDIT_PURCHASE:
        if session.get("payment_status") != "paid":
            logger.info(
                "Checkout session %s not paid yet (%s); credits follow on payment",
                session["id"],
                session.get("payment_status"),
            )
            return
        try:
            credits = int(metadata.get("credits", 0))
        except (TypeError, ValueError):
            credits = 0
        if credits <= 0:
            logger.warning("Credit checkout %s carries no credit amount", session["id"])
            return
        grant_credits(
            account=account,
            credits=credits,
            checkout_session_id=session["id"],
            package_id=_existing_package_id(metadata.get("package_id")),
            payment_intent_id=_id_of(session.get("payment_intent")),
        )
        return

    subscription_id = _id_of(session.get("subscription"))
    if not subscription_id:
        return

    mirror = _lock_or_create_mirror(subscription_id, account)
    update_fields = []
    if not mirror.stripe_customer_id and customer_id:
        mirror.stripe_customer_id = customer_id
        update_fields.append("stripe_customer_id")
    if mirror.plan_id is None and metadata.get("plan_id"):
        mirror.plan = Plan.objects.filter(pk=metadata["plan_id"]).first()
        update_fields.append("plan")
    if not mirror.interval and metadata.get("interval"):
        mirror.interval = normalize_interval(metadata["interval"])
        update_fields.append("interval")
    if update_fields:
        mirror.save(update_fields=[*update_fields, "modified"])
    logger.info(
        "Checkout %s linked subscription %s to account %s",
        session["id"],
        subscription_id,
        account.pk,
    )


@registry.register(
    WebhookEventKind.SUBSCRIPTION_CREATED,
    WebhookEventKind.SUBSCRIPTION_UPDATED,
    WebhookEventKind.SUBSCRIPTION_DELETED,
    WebhookEventKind.SUBSCRIPTION_PAUSED,
    WebhookEventKind.SUBSCRIPTION_RESUMED,
)
def handle_subscription_changed(event):
    apply_subscription_snapshot(event["data"]["object"], event)


@registry.register(WebhookEventKind.SUBSCRIPTION_TRIAL_WILL_END)
def handle_trial_will_end(event):
    """Fires three days before a trial ends."""
    stripe_sub = event["data"]["object"]
    mirror = (
        Subscription.objects.filter(stripe_subscription_id=stripe_sub["id"])
        .select_related("account")
        .first()
    )
    if mirror is None:
        return
    # TODO: Send the trial ending email once the notifications app exists
    logger.info(
        "Trial ending soon for account %s (subscription %s, ends %s)",
        mirror.account_id,
        stripe_sub["id"],
        _timestamp(stripe_sub.get("trial_end")),
    )


@registry.register(WebhookEventKind.INVOICE_PAID)
def handle_invoice_paid(event):
    """A paid renewal brings a past-due subscription back to active."""
    _apply_invoice_status(
        event,
        SubscriptionStatus.ACTIVE,
        from_statuses={
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.UNPAID,
            SubscriptionStatus.INCOMPLETE,
        },
    )


@registry.register(WebhookEventKind.INVOICE_PAYMENT_FAILED)
def handle_payment_failed(event):
    """Start dunning. Stripe retries the payment on its own schedule."""
    invoice = event["data"]["object"]
    logger.warning(
        "invoice.payment_failed: customer=%s, amount=%s",
        _id_of(invoice.get("customer")),
        invoice.get("amount_due"),
    )
    _apply_invoice_status(
        event,
        SubscriptionStatus.PAST_DUE,
        from_statuses={SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING},
    )


@registry.register(WebhookEventKind.INVOICE_FINALIZED)
def handle_invoice_finalized(event):
    """Nothing to mirror until the invoice is paid or fails."""
    invoice = event["data"]["object"]
    logger.info(
        "Invoice %s finalized: customer=%s, subscription=%s, amount=%s",
        invoice["id"],
        _id_of(invoice.get("customer")),
        _invoice_subscription_id(invoice) or "-",
        invoice.get("amount_due"),
    )
