import django.db.models.deletion
import django.utils.timezone
import model_utils.fields
from django.conf import settings
from django.db import migrations
from django.db import models

INTERVAL_CHOICES = [
    ("MONTHLY", "Monthly"),
    ("QUARTERLY", "Quarterly"),
    ("SIX_MONTHS", "Six months"),
    ("YEARLY", "Yearly"),
]

STATUS_CHOICES = [
    ("trialing", "Trial"),
    ("active", "Active"),
    ("past_due", "Past due"),
    ("paused", "Paused"),
    ("canceled", "Canceled"),
    ("incomplete", "Incomplete"),
    ("incomplete_expired", "Incomplete (expired)"),
    ("unpaid", "Unpaid"),
]


def _id():
    return models.BigAutoField(
        auto_created=True,
        primary_key=True,
        serialize=False,
        verbose_name="ID",
    )


def _created():
    return model_utils.fields.AutoCreatedField(
        default=django.utils.timezone.now,
        editable=False,
        verbose_name="created",
    )


def _modified():
    return model_utils.fields.AutoLastModifiedField(
        default=django.utils.timezone.now,
        editable=False,
        verbose_name="modified",
    )


def _money():
    return models.DecimalField(decimal_places=2, default=0, max_digits=10)


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Plan",
            fields=[
                ("id", _id()),
                ("created", _created()),
                ("modified", _modified()),
                (
                    "name",
                    models.CharField(
                        help_text="Display name for the plan.",
                        max_length=100,
                    ),
                ),
                ("slug", models.SlugField(max_length=100, unique=True)),
                (
                    "description",
                    models.TextField(
                        blank=True,
                        help_text="Marketing description shown on the pricing page.",
                    ),
                ),
                (
                    "plan_type",
                    models.CharField(
                        choices=[("STYLIST", "Stylist"), ("SALON_OWNER", "Salon owner")],
                        default="STYLIST",
                        max_length=20,
                    ),
                ),
                ("price_monthly", _money()),
                ("price_quarterly", _money()),
                ("price_six_months", _money()),
                ("price_yearly", _money()),
                (
                    "is_active",
                    models.BooleanField(
                        default=True,
                        help_text=(
                            "Inactive plans stay attached to existing "
                            "subscribers but are not sold."
                        ),
                    ),
                ),
                (
                    "trial_days",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Free trial length for new subscribers. Empty = no trial.",
                        null=True,
                    ),
                ),
                (
                    "included_credits",
                    models.PositiveIntegerField(
                        default=0,
                        help_text="AI credits included per billing period.",
                    ),
                ),
                ("features", models.JSONField(blank=True, default=list)),
                ("is_popular", models.BooleanField(default=False)),
                ("sort_order", models.IntegerField(default=0)),
                ("stripe_product_id", models.CharField(blank=True, max_length=255)),
                ("stripe_price_monthly", models.CharField(blank=True, max_length=255)),
                ("stripe_price_quarterly", models.CharField(blank=True, max_length=255)),
                ("stripe_price_six_months", models.CharField(blank=True, max_length=255)),
                ("stripe_price_yearly", models.CharField(blank=True, max_length=255)),
            ],
            options={
                "ordering": ["plan_type", "sort_order"],
            },
        ),
        migrations.CreateModel(
            name="CreditPackage",
            fields=[
                ("id", _id()),
                ("created", _created()),
                ("modified", _modified()),
                ("name", models.CharField(max_length=100)),
                ("description", models.TextField(blank=True)),
                ("credits", models.PositiveIntegerField()),
                ("bonus_credits", models.PositiveIntegerField(default=0)),
                ("price_eur", models.DecimalField(decimal_places=2, max_digits=10)),
                ("is_active", models.BooleanField(default=True)),
                ("sort_order", models.IntegerField(default=0)),
                ("stripe_product_id", models.CharField(blank=True, max_length=255)),
                ("stripe_price_id", models.CharField(blank=True, max_length=255)),
            ],
            options={
                "ordering": ["sort_order"],
            },
        ),
        migrations.CreateModel(
            name="ProcessedWebhookEvent",
            fields=[
                ("id", _id()),
                ("created", _created()),
                ("modified", _modified()),
                ("stripe_event_id", models.CharField(max_length=255, unique=True)),
                ("event_type", models.CharField(max_length=100)),
                ("event_created", models.DateTimeField()),
            ],
            options={
                "ordering": ["-event_created"],
            },
        ),
        migrations.CreateModel(
            name="Subscription",
            fields=[
                ("id", _id()),
                ("created", _created()),
                ("modified", _modified()),
                (
                    "interval",
                    models.CharField(blank=True, choices=INTERVAL_CHOICES, max_length=20),
                ),
                (
                    "status",
                    models.CharField(
                        choices=STATUS_CHOICES,
                        default="incomplete",
                        max_length=20,
                    ),
                ),
                ("stripe_subscription_id", models.CharField(max_length=255, unique=True)),
                ("stripe_customer_id", models.CharField(blank=True, max_length=255)),
                ("stripe_price_id", models.CharField(blank=True, max_length=255)),
                ("cancel_at_period_end", models.BooleanField(default=False)),
                ("is_paused", models.BooleanField(default=False)),
                ("current_period_end", models.DateTimeField(blank=True, null=True)),
                ("trial_ends_at", models.DateTimeField(blank=True, null=True)),
                (
                    "last_event_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="Creation time of the newest applied Stripe event.",
                        null=True,
                    ),
                ),
                ("last_event_id", models.CharField(blank=True, max_length=255)),
                (
                    "account",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="subscriptions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "plan",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="billing.plan",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["status"], name="billing_sub_status_idx"),
                    models.Index(
                        fields=["stripe_customer_id"],
                        name="billing_sub_customer_idx",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="CreditBalance",
            fields=[
                ("id", _id()),
                ("created", _created()),
                ("modified", _modified()),
                ("balance", models.IntegerField(default=0)),
                ("lifetime_bought", models.IntegerField(default=0)),
                ("last_top_up_at", models.DateTimeField(blank=True, null=True)),
                (
                    "account",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="credit_balance",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "abstract": False,
            },
        ),
        migrations.CreateModel(
            name="CreditTransaction",
            fields=[
                ("id", _id()),
                ("created", _created()),
                ("modified", _modified()),
                (
                    "transaction_type",
                    models.CharField(
                        choices=[
                            ("purchase", "Purchase"),
                            ("usage", "Usage"),
                            ("adjustment", "Adjustment"),
                        ],
                        max_length=20,
                    ),
                ),
                (
                    "amount",
                    models.IntegerField(
                        help_text="Credits added (positive) or used (negative).",
                    ),
                ),
                ("balance_before", models.IntegerField()),
                ("balance_after", models.IntegerField()),
                (
                    "stripe_checkout_session_id",
                    models.CharField(blank=True, max_length=255, null=True, unique=True),
                ),
                ("stripe_payment_intent_id", models.CharField(blank=True, max_length=255)),
                ("description", models.CharField(blank=True, max_length=255)),
                (
                    "account",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="credit_transactions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "package",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="transactions",
                        to="billing.creditpackage",
                    ),
                ),
            ],
            options={
                "ordering": ["-created"],
            },
        ),
    ]
