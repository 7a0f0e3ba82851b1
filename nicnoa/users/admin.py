from django.contrib import admin
from django.contrib.auth import admin as auth_admin
from django.utils.translation import gettext_lazy as _

from nicnoa.users.models import User


@admin.register(User)
class UserAdmin(auth_admin.UserAdmin):
    fieldsets = (
        *auth_admin.UserAdmin.fieldsets,
        (_("Billing"), {"fields": ("name", "role", "stripe_customer_id")}),
    )
    list_display = ["username", "email", "name", "role", "stripe_customer_id"]
    search_fields = ["username", "email", "name", "stripe_customer_id"]
    # Set once by the billing engine, never edited by hand
    readonly_fields = ["stripe_customer_id"]
