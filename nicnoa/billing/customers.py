"""
Customer identity mapping between local accounts and Stripe customers.

Every account maps to at most one Stripe customer. The first purchase for an
account creates the customer; every later call returns the stored ID without
touching Stripe.

Two first purchases can race (double-clicked "buy", two tabs). The creation
path is serialized three ways:
- A row lock on the account for the check-create-persist sequence
- A Stripe idempotency key derived from the account ID and the request
  parameters, so concurrent or retried creations collapse to a single remote
  customer, while a retry after the email or name changed gets a fresh key
- A conditional write (``stripe_customer_id IS NULL``) plus the unique
  column, so a lost race returns the winner's ID instead of overwriting it

Before creating, we also search Stripe for a customer already tagged with
the account ID. That recovers the customer left behind when a previous
attempt created it remotely but failed to persist the ID locally.
"""

from __future__ import annotations

import logging

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import transaction

from nicnoa.billing.exceptions import NotFoundError
from nicnoa.billing.gateway import StripeGateway
from nicnoa.billing.gateway import get_gateway
from nicnoa.billing.gateway import idempotency_key

logger = logging.getLogger(__name__)

ACCOUNT_METADATA_KEY = "account_id"


class CustomerService:
    """
    Get or create the Stripe customer for an account.

    Usage:
        service = CustomerService()
        customer_id = service.get_or_create_customer(
            account_id=user.pk,
            email=user.email,
            name=user.name,
        )
    """

    def __init__(self, gateway: StripeGateway | None = None):
        self.gateway = gateway or get_gateway()

    def get_or_create_customer(
        self,
        account_id: int,
        email: str,
        name: str | None = None,
    ) -> str:
        """
        Return the account's Stripe customer ID, creating the customer once.

        Raises:
            NotFoundError: If the account does not exist
            RemoteTransientError: If Stripe is unreachable (safe to retry)
        """
        User = get_user_model()  # noqa: N806

        # Fast path: no lock, no Stripe call
        stored = User.objects.filter(pk=account_id).values("stripe_customer_id").first()
        if stored is None:
            msg = f"Account {account_id} not found"
            raise NotFoundError(msg)
        if stored["stripe_customer_id"]:
            return stored["stripe_customer_id"]

        with transaction.atomic():
            account = User.objects.select_for_update().filter(pk=account_id).first()
            if account is None:
                msg = f"Account {account_id} not found"
                raise NotFoundError(msg)
            if account.stripe_customer_id:
                # Another request created it while we waited for the lock
                return account.stripe_customer_id

            customer_id = self.gateway.find_customer_id(
                ACCOUNT_METADATA_KEY,
                str(account_id),
            )
            if customer_id:
                logger.info(
                    "Recovered existing Stripe customer %s for account %s",
                    customer_id,
                    account_id,
                )
            else:
                params = {
                    "email": email,
                    "name": name,
                    "metadata": {
                        ACCOUNT_METADATA_KEY: str(account_id),
                        "platform": settings.BILLING_PLATFORM_TAG,
                    },
                }
                customer = self.gateway.create_customer(
                    **params,
                    idempotency_key=idempotency_key(f"customer-account-{account_id}", params),
                )
                customer_id = customer["id"]
                logger.info(
                    "Created Stripe customer %s for account %s",
                    customer_id,
                    account_id,
                )

            updated = User.objects.filter(
                pk=account_id,
                stripe_customer_id__isnull=True,
            ).update(stripe_customer_id=customer_id)

            if not updated:
                winner = (
                    User.objects.filter(pk=account_id)
                    .values_list("stripe_customer_id", flat=True)
                    .get()
                )
                if winner != customer_id:
                    logger.warning(
                        "Lost customer creation race for account %s: keeping %s, "
                        "Stripe customer %s is orphaned",
                        account_id,
                        winner,
                        customer_id,
                    )
                return winner

        return customer_id
