"""
URL configuration for the billing app.

Routes:
- /billing/webhook/               - Stripe webhook receiver (POST)
- /billing/checkout/              - Start Stripe Checkout (POST, JSON)
- /billing/checkout/success/      - Checkout success return
- /billing/checkout/canceled/     - Checkout cancel return
- /billing/portal/                - Stripe Customer Portal URL (POST, JSON)
- /billing/change-plan/preview/   - Preview plan change (GET, JSON)
- /billing/credits/                - Entitlement and credit balance (GET, JSON)
- /billing/admin/sync/            - Catalog sync status / trigger (staff)
"""

from django.urls import path

from nicnoa.billing.views import CatalogSyncView
from nicnoa.billing.views import ChangePlanPreviewView
from nicnoa.billing.views import CheckoutReturnView
from nicnoa.billing.views import CheckoutStartView
from nicnoa.billing.views import CreditStatusView
from nicnoa.billing.views import CustomerPortalView
from nicnoa.billing.views import stripe_webhook

app_name = "billing"

urlpatterns = [
    path(
        "webhook/",
        stripe_webhook,
        name="webhook",
    ),
    path(
        "checkout/",
        CheckoutStartView.as_view(),
        name="checkout",
    ),
    path(
        "checkout/success/",
        CheckoutReturnView.as_view(outcome="success"),
        name="checkout-success",
    ),
    path(
        "checkout/canceled/",
        CheckoutReturnView.as_view(outcome="canceled"),
        name="checkout-canceled",
    ),
    path(
        "portal/",
        CustomerPortalView.as_view(),
        name="portal",
    ),
    path(
        "change-plan/preview/",
        ChangePlanPreviewView.as_view(),
        name="change-plan-preview",
    ),
    path(
        "credits/",
        CreditStatusView.as_view(),
        name="credits",
    ),
    path(
        "admin/sync/",
        CatalogSyncView.as_view(),
        name="catalog-sync",
    ),
]
