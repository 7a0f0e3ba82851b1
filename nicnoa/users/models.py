from django.contrib.auth.models import AbstractUser
from django.db import models
from django.db.models import CharField
from django.utils.translation import gettext_lazy as _


class Role(models.TextChoices):
    STYLIST = "STYLIST", _("Stylist")
    SALON_OWNER = "SALON_OWNER", _("Salon owner")
    ADMIN = "ADMIN", _("Admin")


class User(AbstractUser):
    """
    Default custom user model for NICNOA.

    The user is the billing account: Stripe customers, subscriptions and
    credit balances all hang off this model.
    """

    # First and last name do not cover name patterns around the globe
    name = CharField(_("Name of User"), blank=True, max_length=255)
    role = models.CharField(
        max_length=20,
        choices=Role.choices,
        default=Role.STYLIST,
    )

    # Null (not blank) when unset so the unique constraint only applies
    # to real customer IDs. At most one Stripe customer per account.
    stripe_customer_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Stripe Customer ID (cus_xxx).",
    )

    def __str__(self) -> str:
        return self.email or self.username

    @property
    def display_name(self) -> str:
        return self.name or self.username
