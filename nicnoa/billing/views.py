"""
Billing HTTP endpoints.

Views in this module:
- stripe_webhook: Verify and apply Stripe events
- CheckoutStartView: Start a subscription or credit checkout (JSON)
- CustomerPortalView: Open the Stripe Customer Portal (JSON)
- ChangePlanPreviewView: Proration estimate for a plan change (JSON)
- CreditStatusView: Entitlement and credit balance of the current user (JSON)
- CatalogSyncView: Catalog sync status and manual sync for staff (JSON)

Library code raises typed billing errors; this module is the only place
they become HTTP statuses (see ``error_response``).
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from http import HTTPStatus
from typing import TYPE_CHECKING

from django.conf import settings
from django.contrib.auth.mixins import LoginRequiredMixin
from django.contrib.auth.mixins import UserPassesTestMixin
from django.http import HttpResponse
from django.http import JsonResponse
from django.urls import reverse
from django.utils import timezone
from django.views import View
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from nicnoa.billing.catalog import CatalogSynchronizer
from nicnoa.billing.checkout import CheckoutService
from nicnoa.billing.constants import ENTITLED_STATUSES
from nicnoa.billing.credits import get_entitlement
from nicnoa.billing.customers import CustomerService
from nicnoa.billing.exceptions import BillingError
from nicnoa.billing.exceptions import ConfigurationError
from nicnoa.billing.exceptions import InsufficientCreditsError
from nicnoa.billing.exceptions import NotFoundError
from nicnoa.billing.exceptions import RemoteTransientError
from nicnoa.billing.exceptions import SignatureInvalidError
from nicnoa.billing.gateway import get_gateway
from nicnoa.billing.lifecycle import resolve_price_id
from nicnoa.billing.models import Subscription
from nicnoa.billing.proration import ProrationCalculator
from nicnoa.billing.webhooks import registry
from nicnoa.billing.webhooks import verify_event

if TYPE_CHECKING:
    from django.http import HttpRequest

logger = logging.getLogger(__name__)

ERROR_STATUS = [
    (NotFoundError, HTTPStatus.NOT_FOUND),
    (ConfigurationError, HTTPStatus.CONFLICT),
    (RemoteTransientError, HTTPStatus.SERVICE_UNAVAILABLE),
    (InsufficientCreditsError, HTTPStatus.PAYMENT_REQUIRED),
]


def error_response(error: BillingError) -> JsonResponse:
    """Map a billing error to a JSON error response."""
    for error_class, status in ERROR_STATUS:
        if isinstance(error, error_class):
            break
    else:
        status = HTTPStatus.BAD_GATEWAY

    if status == HTTPStatus.SERVICE_UNAVAILABLE:
        message = "Payment service is temporarily unavailable. Please try again."
    elif status == HTTPStatus.BAD_GATEWAY:
        message = "Payment service rejected the request. Please contact support."
    else:
        message = str(error)
    return JsonResponse({"error": message}, status=status)


def request_gateway():
    """Gateway whose Stripe calls fit inside this request's time budget."""
    deadline = timezone.now() + timedelta(seconds=settings.BILLING_REQUEST_BUDGET_SECONDS)
    return get_gateway().with_deadline(deadline)


def _positive_int(value) -> int | None:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _json_body(request: HttpRequest) -> dict:
    try:
        payload = json.loads(request.body or "{}")
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return payload if isinstance(payload, dict) else {}


@csrf_exempt
@require_POST
def stripe_webhook(request: HttpRequest) -> HttpResponse:
    """
    Receive a Stripe event.

    Verification failures get a bare 400 so the sender learns nothing about
    why. Handler failures propagate as a 500, which makes Stripe redeliver.
    """
    try:
        event = verify_event(
            request.body,
            request.headers.get("Stripe-Signature"),
            settings.STRIPE_WEBHOOK_SECRET,
        )
    except SignatureInvalidError as e:
        logger.warning("Rejected Stripe webhook: %s", e)
        return HttpResponse(status=HTTPStatus.BAD_REQUEST)

    registry.dispatch(event)
    return JsonResponse({"received": True})


class CheckoutStartView(LoginRequiredMixin, View):
    """
    Start a Stripe Checkout for the current user.

    POST body: ``{"plan_id": 1, "interval": "YEARLY"}`` for a subscription,
    or ``{"package_id": 2}`` for a credit package. Returns the session URL.
    """

    def post(self, request: HttpRequest, *args, **kwargs) -> JsonResponse:
        payload = _json_body(request)
        user = request.user
        success_url = request.build_absolute_uri(reverse("billing:checkout-success"))
        cancel_url = request.build_absolute_uri(reverse("billing:checkout-canceled"))

        plan_id = _positive_int(payload.get("plan_id"))
        package_id = _positive_int(payload.get("package_id"))
        if not plan_id and not package_id:
            return JsonResponse(
                {"error": "plan_id or package_id is required"},
                status=HTTPStatus.BAD_REQUEST,
            )

        try:
            gateway = request_gateway()
            customer_id = CustomerService(gateway).get_or_create_customer(
                user.pk,
                user.email,
                user.name or None,
            )
            checkout = CheckoutService(gateway)
            if plan_id:
                session = checkout.create_subscription_checkout(
                    customer_id,
                    plan_id,
                    payload.get("interval"),
                    success_url,
                    cancel_url,
                    account_id=user.pk,
                )
            else:
                session = checkout.create_credit_checkout(
                    customer_id,
                    package_id,
                    success_url,
                    cancel_url,
                    account_id=user.pk,
                )
        except BillingError as e:
            logger.warning("Checkout failed for account %s: %s", user.pk, e)
            return error_response(e)

        return JsonResponse({"id": session["id"], "url": session["url"]})


class CustomerPortalView(LoginRequiredMixin, View):
    """Return a Stripe Customer Portal URL for the current user."""

    def post(self, request: HttpRequest, *args, **kwargs) -> JsonResponse:
        user = request.user
        if not user.stripe_customer_id:
            return JsonResponse(
                {"error": "No payment information on file. Subscribe first."},
                status=HTTPStatus.NOT_FOUND,
            )

        return_url = request.build_absolute_uri(reverse("billing:checkout-canceled"))
        try:
            session = CheckoutService(request_gateway()).create_portal_session(
                user.stripe_customer_id,
                return_url,
            )
        except BillingError as e:
            logger.warning("Portal session failed for account %s: %s", user.pk, e)
            return error_response(e)

        return JsonResponse({"url": session["url"]})


class ChangePlanPreviewView(LoginRequiredMixin, View):
    """
    Estimate what a plan change would cost right now.

    GET ``?plan=<id>&interval=<INTERVAL>``. Returns ``{"preview": null}``
    when Stripe cannot simulate the invoice, so the UI shows no estimate
    rather than blocking the change.
    """

    def get(self, request: HttpRequest, *args, **kwargs) -> JsonResponse:
        plan_id = _positive_int(request.GET.get("plan"))
        if not plan_id:
            return JsonResponse({"error": "plan is required"}, status=HTTPStatus.BAD_REQUEST)

        subscription = (
            Subscription.objects.filter(
                account=request.user,
                status__in=ENTITLED_STATUSES,
            )
            .order_by("-created")
            .first()
        )
        if subscription is None:
            return JsonResponse(
                {"error": "No active subscription to change"},
                status=HTTPStatus.NOT_FOUND,
            )

        try:
            price_id = resolve_price_id(plan_id, request.GET.get("interval"))
            calculator = ProrationCalculator(request_gateway())
        except BillingError as e:
            return error_response(e)

        preview = calculator.preview_or_none(subscription.stripe_subscription_id, price_id)
        return JsonResponse({"preview": preview.as_dict() if preview else None})


class CreditStatusView(LoginRequiredMixin, View):
    """Whether the current user may use paid features, and with how many credits."""

    def get(self, request: HttpRequest, *args, **kwargs) -> JsonResponse:
        return JsonResponse(get_entitlement(request.user).as_dict())


class CatalogSyncView(LoginRequiredMixin, UserPassesTestMixin, View):
    """
    Staff endpoint for the Stripe catalog.

    GET returns which plans and packages still need a sync. POST syncs one
    item (``{"plan_id": 1}`` / ``{"package_id": 2}``) or everything that
    needs it (``{"sync_all": true}``).
    """

    raise_exception = True

    def test_func(self) -> bool:
        return self.request.user.is_staff

    def get(self, request: HttpRequest, *args, **kwargs) -> JsonResponse:
        synchronizer = CatalogSynchronizer(get_gateway())
        return JsonResponse(synchronizer.sync_status().as_dict())

    def post(self, request: HttpRequest, *args, **kwargs) -> JsonResponse:
        payload = _json_body(request)
        synchronizer = CatalogSynchronizer(get_gateway())

        try:
            if _positive_int(payload.get("plan_id")):
                plan = synchronizer.sync_plan(_positive_int(payload["plan_id"]))
                return JsonResponse(
                    {"success": True, "plan_id": plan.pk, "needs_sync": plan.needs_sync},
                )
            if _positive_int(payload.get("package_id")):
                package = synchronizer.sync_credit_package(
                    _positive_int(payload["package_id"]),
                )
                return JsonResponse(
                    {
                        "success": True,
                        "package_id": package.pk,
                        "stripe_price_id": package.stripe_price_id,
                    },
                )
        except BillingError as e:
            logger.warning("Catalog sync failed: %s", e)
            return error_response(e)

        if payload.get("sync_all"):
            results = synchronizer.sync_all()
            return JsonResponse(
                {
                    "success": all(r.success for r in results),
                    "results": [
                        {
                            "kind": r.kind,
                            "id": r.item_id,
                            "name": r.name,
                            "success": r.success,
                            "error": r.error,
                        }
                        for r in results
                    ],
                },
            )

        return JsonResponse(
            {"error": "plan_id, package_id or sync_all is required"},
            status=HTTPStatus.BAD_REQUEST,
        )


class CheckoutReturnView(LoginRequiredMixin, View):
    """
    Landing endpoint Stripe redirects back to.

    Provisioning happens via webhook; this only reports the current state.
    """

    outcome = "success"

    def get(self, request: HttpRequest, *args, **kwargs) -> JsonResponse:
        subscription = (
            Subscription.objects.filter(account=request.user)
            .select_related("plan")
            .order_by("-created")
            .first()
        )
        return JsonResponse(
            {
                "outcome": self.outcome,
                "subscription": (
                    {
                        "plan": subscription.plan.name if subscription.plan else None,
                        "status": subscription.status,
                        "interval": subscription.interval,
                    }
                    if subscription
                    else None
                ),
            },
        )
