"""
Django admin configuration for billing models.

Provides admin interfaces for:
- Plan: Edit plans and their interval prices, sync them to Stripe
- CreditPackage: Edit credit packages, sync them to Stripe
- Subscription: Read-only view of the webhook-fed mirror
- CreditBalance / CreditTransaction: Credit history
- ProcessedWebhookEvent: Applied Stripe events

Stripe references are never edited by hand. The "Sync to Stripe" action
creates whatever is missing and writes the IDs back.
"""

from django.contrib import admin
from django.contrib import messages

from nicnoa.billing.catalog import CatalogSynchronizer
from nicnoa.billing.exceptions import BillingError
from nicnoa.billing.models import CreditBalance
from nicnoa.billing.models import CreditPackage
from nicnoa.billing.models import CreditTransaction
from nicnoa.billing.models import Plan
from nicnoa.billing.models import ProcessedWebhookEvent
from nicnoa.billing.models import Subscription


def _sync_selected(modeladmin, request, queryset, sync_name: str):
    synchronizer = CatalogSynchronizer()
    sync = getattr(synchronizer, sync_name)
    synced = 0
    for obj in queryset:
        try:
            sync(obj.pk)
        except BillingError as e:
            modeladmin.message_user(
                request,
                f"Failed to sync {obj}: {e}",
                level=messages.ERROR,
            )
        else:
            synced += 1
    if synced:
        modeladmin.message_user(request, f"Synced {synced} item(s) to Stripe.")


def _locked_price_fields(obj) -> list[str]:
    """Local price columns whose Stripe Price already exists."""
    if obj is None:
        return []
    return [
        amount_field
        for ref_field, amount_field in obj.write_once_fields().items()
        if amount_field and getattr(obj, ref_field)
    ]


@admin.register(Plan)
class PlanAdmin(admin.ModelAdmin):
    """Admin for subscription plans."""

    list_display = [
        "name",
        "plan_type",
        "price_monthly",
        "price_quarterly",
        "price_six_months",
        "price_yearly",
        "trial_days",
        "is_active",
        "needs_sync",
        "sort_order",
    ]
    list_filter = ["plan_type", "is_active"]
    list_editable = ["sort_order"]
    ordering = ["plan_type", "sort_order"]
    search_fields = ["name", "slug"]
    prepopulated_fields = {"slug": ["name"]}
    actions = ["sync_to_stripe"]
    readonly_fields = [
        "stripe_product_id",
        "stripe_price_monthly",
        "stripe_price_quarterly",
        "stripe_price_six_months",
        "stripe_price_yearly",
        "created",
        "modified",
    ]

    fieldsets = [
        (None, {"fields": ["name", "slug", "description", "plan_type", "is_active"]}),
        (
            "Pricing",
            {
                "fields": [
                    "price_monthly",
                    "price_quarterly",
                    "price_six_months",
                    "price_yearly",
                    "trial_days",
                    "included_credits",
                ],
                "description": (
                    "Prices in EUR. 0 = not sold at this interval. A price that "
                    "is already synced to Stripe cannot be changed."
                ),
            },
        ),
        ("Display", {"fields": ["features", "is_popular", "sort_order"]}),
        (
            "Stripe",
            {
                "fields": [
                    "stripe_product_id",
                    "stripe_price_monthly",
                    "stripe_price_quarterly",
                    "stripe_price_six_months",
                    "stripe_price_yearly",
                ],
            },
        ),
        ("Timestamps", {"fields": ["created", "modified"]}),
    ]

    def get_readonly_fields(self, request, obj=None):
        return [*super().get_readonly_fields(request, obj), *_locked_price_fields(obj)]

    @admin.display(boolean=True, description="Needs sync")
    def needs_sync(self, obj: Plan) -> bool:
        return obj.needs_sync

    @admin.action(description="Sync selected plans to Stripe")
    def sync_to_stripe(self, request, queryset):
        _sync_selected(self, request, queryset, "sync_plan")


@admin.register(CreditPackage)
class CreditPackageAdmin(admin.ModelAdmin):
    list_display = [
        "name",
        "credits",
        "bonus_credits",
        "price_eur",
        "is_active",
        "stripe_price_id",
        "sort_order",
    ]
    list_filter = ["is_active"]
    ordering = ["sort_order"]
    actions = ["sync_to_stripe"]
    readonly_fields = ["stripe_product_id", "stripe_price_id", "created", "modified"]

    def get_readonly_fields(self, request, obj=None):
        return [*super().get_readonly_fields(request, obj), *_locked_price_fields(obj)]

    @admin.action(description="Sync selected packages to Stripe")
    def sync_to_stripe(self, request, queryset):
        _sync_selected(self, request, queryset, "sync_credit_package")


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    """Read-only: the mirror only changes through Stripe webhooks."""

    list_display = [
        "account",
        "plan",
        "interval",
        "status",
        "cancel_at_period_end",
        "is_paused",
        "current_period_end",
        "stripe_subscription_id",
    ]
    list_filter = ["status", "plan", "interval"]
    search_fields = [
        "account__email",
        "account__username",
        "stripe_customer_id",
        "stripe_subscription_id",
    ]
    raw_id_fields = ["account"]

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(CreditBalance)
class CreditBalanceAdmin(admin.ModelAdmin):
    list_display = ["account", "balance", "lifetime_bought", "last_top_up_at"]
    search_fields = ["account__email", "account__username"]
    raw_id_fields = ["account"]
    readonly_fields = ["created", "modified"]


@admin.register(CreditTransaction)
class CreditTransactionAdmin(admin.ModelAdmin):
    """Admin for credit history."""

    list_display = [
        "account",
        "transaction_type",
        "amount",
        "balance_after",
        "package",
        "created",
    ]
    list_filter = ["transaction_type"]
    search_fields = ["account__email", "stripe_checkout_session_id"]
    raw_id_fields = ["account"]
    readonly_fields = ["created", "modified"]


@admin.register(ProcessedWebhookEvent)
class ProcessedWebhookEventAdmin(admin.ModelAdmin):
    list_display = ["stripe_event_id", "event_type", "event_created", "created"]
    list_filter = ["event_type"]
    search_fields = ["stripe_event_id"]
    readonly_fields = ["stripe_event_id", "event_type", "event_created", "created", "modified"]
