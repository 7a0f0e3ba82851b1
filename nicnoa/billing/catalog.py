"""
Catalog synchronization: local plans and credit packages → Stripe.

Stripe Products and Prices are created from our Plan and CreditPackage rows
and their IDs are written back. Sync is safe to call any number of times:

- References already stored are never recreated or overwritten
- Each reference is persisted as soon as its Stripe object exists, so a
  failure halfway through a plan leaves the product (and any finished
  prices) in place and the next run resumes where this one stopped
- Each create re-reads the column first and writes back conditionally.
  When a concurrent sync won the race, its reference is kept and the
  object we just created is archived in Stripe
- Creates carry an idempotency key derived from the request parameters,
  so a retried call returns the original object instead of a duplicate

Nothing here is called implicitly: checkout fails with a configuration
error until an operator (admin action, sync endpoint or
``sync_stripe_catalog`` command) has synchronized the item.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field

from django.conf import settings

from nicnoa.billing.constants import BillingInterval
from nicnoa.billing.exceptions import BillingError
from nicnoa.billing.exceptions import ConfigurationError
from nicnoa.billing.exceptions import NotFoundError
from nicnoa.billing.gateway import StripeGateway
from nicnoa.billing.gateway import get_gateway
from nicnoa.billing.gateway import idempotency_key
from nicnoa.billing.models import CreditPackage
from nicnoa.billing.models import Plan
from nicnoa.billing.pricing import STRIPE_PRICE_FIELDS
from nicnoa.billing.pricing import price_for_interval
from nicnoa.billing.pricing import recurring_for_interval
from nicnoa.billing.pricing import to_minor_units
from nicnoa.billing.refs import Synced
from nicnoa.billing.refs import Unsynced
from nicnoa.billing.refs import ref_from_column

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncResult:
    """Outcome of synchronizing one catalog item in a batch."""

    kind: str
    item_id: int
    name: str
    success: bool
    error: str = ""


@dataclass(frozen=True)
class CatalogItemStatus:
    kind: str
    item_id: int
    name: str
    is_active: bool
    needs_sync: bool


@dataclass
class CatalogStatus:
    """Which plans and packages still need a sync."""

    plans: list[CatalogItemStatus] = field(default_factory=list)
    packages: list[CatalogItemStatus] = field(default_factory=list)

    @property
    def needs_sync_count(self) -> int:
        return sum(1 for item in (*self.plans, *self.packages) if item.needs_sync)

    @property
    def synced_count(self) -> int:
        return len(self.plans) + len(self.packages) - self.needs_sync_count

    def as_dict(self) -> dict:
        def item_dict(item: CatalogItemStatus) -> dict:
            return {
                "id": item.item_id,
                "name": item.name,
                "is_active": item.is_active,
                "needs_sync": item.needs_sync,
            }

        return {
            "plans": [item_dict(p) for p in self.plans],
            "packages": [item_dict(p) for p in self.packages],
            "summary": {
                "synced": self.synced_count,
                "needs_sync": self.needs_sync_count,
            },
        }


class CatalogSynchronizer:
    """
    Create missing Stripe Products and Prices for plans and credit packages.

    Usage:
        synchronizer = CatalogSynchronizer()
        plan = synchronizer.sync_plan(plan.pk)
        plan.price_ref(BillingInterval.YEARLY)  # Synced("price_...")
    """

    def __init__(
        self,
        gateway: StripeGateway | None = None,
        currency: str | None = None,
    ):
        self.gateway = gateway or get_gateway()
        self.currency = currency or settings.BILLING_CURRENCY

    # -- Plans -------------------------------------------------------------

    def sync_plan(self, plan_id: int) -> Plan:
        """
        Ensure the plan has a Stripe Product and one Price per sellable interval.

        Intervals with a zero price are skipped. Returns the refreshed plan.

        Raises:
            NotFoundError: If the plan does not exist
            GatewayError: If Stripe rejects a create (refs created so far stay)
        """
        plan = Plan.objects.filter(pk=plan_id).first()
        if plan is None:
            msg = f"Plan {plan_id} not found"
            raise NotFoundError(msg)

        product_params = {
            "name": plan.name,
            "description": plan.description or None,
            "metadata": {
                "plan_id": str(plan.pk),
                "plan_type": plan.plan_type,
                "platform": settings.BILLING_PLATFORM_TAG,
            },
        }
        product_id = self._ensure_reference(
            Plan,
            plan.pk,
            "stripe_product_id",
            create=lambda: self.gateway.create_product(
                **product_params,
                idempotency_key=idempotency_key(f"plan-{plan.pk}-product", product_params),
            ),
            archive=self.gateway.archive_product,
        )

        for interval in BillingInterval:
            amount = price_for_interval(plan, interval)
            if amount <= 0:
                continue
            price_params = {
                "product": product_id,
                "unit_amount": to_minor_units(amount),
                "currency": self.currency,
                "recurring": recurring_for_interval(interval),
                "metadata": {
                    "plan_id": str(plan.pk),
                    "interval": interval.value,
                },
            }
            self._ensure_reference(
                Plan,
                plan.pk,
                STRIPE_PRICE_FIELDS[interval],
                create=lambda params=price_params, interval=interval: (
                    self.gateway.create_price(
                        **params,
                        idempotency_key=idempotency_key(
                            f"plan-{plan.pk}-{interval.value.lower()}",
                            params,
                        ),
                    )
                ),
                archive=self.gateway.archive_price,
            )

        plan.refresh_from_db()
        logger.info("Synced plan %s (%s) to Stripe", plan.pk, plan.slug)
        return plan

    # -- Credit packages ---------------------------------------------------

    def sync_credit_package(self, package_id: int) -> CreditPackage:
        """
        Ensure the package has a one-time Stripe Price.

        A package whose price reference is already set is returned as is.

        Raises:
            NotFoundError: If the package does not exist
            ConfigurationError: If the package has no positive price
        """
        package = CreditPackage.objects.filter(pk=package_id).first()
        if package is None:
            msg = f"Credit package {package_id} not found"
            raise NotFoundError(msg)

        match package.price_ref:
            case Synced():
                return package
            case Unsynced():
                pass

        if package.price_eur <= 0:
            msg = f"Credit package {package.name} has no positive price"
            raise ConfigurationError(msg)

        metadata = {
            "package_id": str(package.pk),
            "credits": str(package.credits),
            "bonus_credits": str(package.bonus_credits),
            "platform": settings.BILLING_PLATFORM_TAG,
        }
        product_params = {
            "name": package.name,
            "description": package.description or package.default_description,
            "metadata": metadata,
        }
        product_id = self._ensure_reference(
            CreditPackage,
            package.pk,
            "stripe_product_id",
            create=lambda: self.gateway.create_product(
                **product_params,
                idempotency_key=idempotency_key(
                    f"package-{package.pk}-product",
                    product_params,
                ),
            ),
            archive=self.gateway.archive_product,
        )

        price_params = {
            "product": product_id,
            "unit_amount": to_minor_units(package.price_eur),
            "currency": self.currency,
            "metadata": {
                "package_id": str(package.pk),
                "credits": str(package.credits),
                "bonus_credits": str(package.bonus_credits),
            },
        }
        self._ensure_reference(
            CreditPackage,
            package.pk,
            "stripe_price_id",
            create=lambda: self.gateway.create_price(
                **price_params,
                idempotency_key=idempotency_key(f"package-{package.pk}-price", price_params),
            ),
            archive=self.gateway.archive_price,
        )

        package.refresh_from_db()
        logger.info("Synced credit package %s to Stripe", package.pk)
        return package

    # -- Batch -------------------------------------------------------------

    def sync_all(self, *, active_only: bool = True) -> list[SyncResult]:
        """
        Sync every plan and package that needs it.

        One failing item never stops the batch; its error is reported in
        the result list instead.
        """
        plans = Plan.objects.all()
        packages = CreditPackage.objects.all()
        if active_only:
            plans = plans.active()
            packages = packages.active()

        results = []
        for plan in plans:
            if not plan.needs_sync:
                continue
            results.append(self._run("plan", plan.pk, plan.name, self.sync_plan))
        for package in packages:
            if not package.needs_sync:
                continue
            results.append(
                self._run("package", package.pk, package.name, self.sync_credit_package),
            )
        return results

    def sync_status(self) -> CatalogStatus:
        status = CatalogStatus()
        for plan in Plan.objects.all():
            status.plans.append(
                CatalogItemStatus(
                    kind="plan",
                    item_id=plan.pk,
                    name=plan.name,
                    is_active=plan.is_active,
                    needs_sync=plan.needs_sync,
                ),
            )
        for package in CreditPackage.objects.all():
            status.packages.append(
                CatalogItemStatus(
                    kind="package",
                    item_id=package.pk,
                    name=package.name,
                    is_active=package.is_active,
                    needs_sync=package.needs_sync,
                ),
            )
        return status

    # -- Internals ---------------------------------------------------------

    def _run(self, kind: str, item_id: int, name: str, sync) -> SyncResult:
        try:
            sync(item_id)
        except BillingError as e:
            logger.exception("Failed to sync %s %s", kind, item_id)
            return SyncResult(kind, item_id, name, success=False, error=str(e))
        return SyncResult(kind, item_id, name, success=True)

    def _ensure_reference(
        self,
        model,
        pk: int,
        column: str,
        *,
        create: Callable[[], dict],
        archive: Callable[[str], None],
    ) -> str:
        """
        Return the Stripe ID stored in ``column``, creating the object once.

        The column is re-read right before the create, and the write back
        only succeeds if the column is still blank.
        """
        current = model.objects.filter(pk=pk).values_list(column, flat=True).get()
        match ref_from_column(current):
            case Synced(external_id=existing):
                return existing
            case Unsynced():
                pass

        created_id = create()["id"]
        updated = model.objects.filter(pk=pk, **{column: ""}).update(**{column: created_id})
        if updated:
            return created_id

        winner = model.objects.filter(pk=pk).values_list(column, flat=True).get()
        if winner != created_id:
            logger.warning(
                "Concurrent sync already set %s.%s=%s for %s; archiving duplicate %s",
                model.__name__,
                column,
                winner,
                pk,
                created_id,
            )
            try:
                archive(created_id)
            except BillingError:
                # An unused orphan is acceptable; the race itself is a success
                logger.exception("Could not archive duplicate %s", created_id)
        return winner
