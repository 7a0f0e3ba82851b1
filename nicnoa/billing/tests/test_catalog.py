"""
Tests for the catalog synchronizer.

These tests cover:
- Creating products and one recurring price per sellable interval
- Repeated syncs creating nothing new
- Resuming after a failure halfway through a plan
- Losing a concurrent sync race
- One-time prices for credit packages
- Batch sync and status reporting
"""

from decimal import Decimal

import pytest

from nicnoa.billing.catalog import CatalogSynchronizer
from nicnoa.billing.constants import BillingInterval
from nicnoa.billing.exceptions import ConfigurationError
from nicnoa.billing.exceptions import GatewayError
from nicnoa.billing.exceptions import NotFoundError
from nicnoa.billing.exceptions import RemoteTransientError
from nicnoa.billing.gateway import idempotency_key
from nicnoa.billing.models import Plan
from nicnoa.billing.refs import Synced
from nicnoa.billing.tests.factories import CreditPackageFactory
from nicnoa.billing.tests.factories import PlanFactory


def test_idempotency_key_is_stable():
    params = {"product": "prod_1", "unit_amount": 2900}
    assert idempotency_key("plan-1", params) == idempotency_key("plan-1", dict(params))
    assert idempotency_key("plan-1", params) != idempotency_key(
        "plan-1",
        {**params, "unit_amount": 3900},
    )


@pytest.mark.django_db
class TestSyncPlan:
    def test_creates_product_and_interval_prices(self, fake_gateway):
        plan = PlanFactory()

        plan = CatalogSynchronizer(fake_gateway).sync_plan(plan.pk)

        assert not plan.needs_sync
        product = fake_gateway.products[plan.stripe_product_id]
        assert product["metadata"]["plan_id"] == str(plan.pk)
        assert product["metadata"]["plan_type"] == plan.plan_type

        amounts = {
            interval: fake_gateway.prices[plan.price_ref(interval).external_id]
            for interval in BillingInterval
        }
        assert amounts[BillingInterval.MONTHLY]["unit_amount"] == 2900
        assert amounts[BillingInterval.QUARTERLY]["unit_amount"] == 7900
        assert amounts[BillingInterval.SIX_MONTHS]["unit_amount"] == 14900
        assert amounts[BillingInterval.YEARLY]["unit_amount"] == 29000
        assert amounts[BillingInterval.YEARLY]["recurring"] == {
            "interval": "year",
            "interval_count": 1,
        }
        assert amounts[BillingInterval.SIX_MONTHS]["recurring"] == {
            "interval": "month",
            "interval_count": 6,
        }
        assert all(price["currency"] == "eur" for price in amounts.values())
        assert all(price["product"] == plan.stripe_product_id for price in amounts.values())

    def test_second_sync_creates_nothing(self, fake_gateway):
        plan = PlanFactory()
        synchronizer = CatalogSynchronizer(fake_gateway)

        first = synchronizer.sync_plan(plan.pk)
        second = synchronizer.sync_plan(plan.pk)

        assert len(fake_gateway.calls_to("create_product")) == 1
        assert len(fake_gateway.calls_to("create_price")) == 4
        for interval in BillingInterval:
            assert first.price_ref(interval) == second.price_ref(interval)

    def test_zero_price_interval_is_skipped(self, fake_gateway):
        plan = PlanFactory(price_quarterly=Decimal("0"))

        plan = CatalogSynchronizer(fake_gateway).sync_plan(plan.pk)

        assert plan.stripe_price_quarterly == ""
        assert len(fake_gateway.prices) == 3
        assert not plan.needs_sync

    def test_resumes_after_partial_failure(self, fake_gateway):
        """References created before a failure are kept and not recreated."""
        plan = PlanFactory()
        attempts = []

        def fail_second_price(params):
            attempts.append(params)
            if len(attempts) == 2:
                msg = "Stripe timed out"
                raise RemoteTransientError(msg)

        fake_gateway.before_create["create_price"] = fail_second_price
        synchronizer = CatalogSynchronizer(fake_gateway)

        with pytest.raises(RemoteTransientError):
            synchronizer.sync_plan(plan.pk)

        plan.refresh_from_db()
        assert isinstance(plan.product_ref, Synced)
        assert isinstance(plan.price_ref(BillingInterval.MONTHLY), Synced)
        assert plan.stripe_price_quarterly == ""
        monthly = plan.stripe_price_monthly

        plan = synchronizer.sync_plan(plan.pk)

        assert not plan.needs_sync
        assert plan.stripe_price_monthly == monthly
        assert len(fake_gateway.calls_to("create_product")) == 1
        assert len(fake_gateway.prices) == 4

    def test_lost_race_keeps_winner_and_archives_duplicate(self, fake_gateway):
        plan = PlanFactory()

        def concurrent_sync(params):
            if params["metadata"]["interval"] == BillingInterval.MONTHLY:
                Plan.objects.filter(pk=plan.pk).update(stripe_price_monthly="price_winner")

        fake_gateway.before_create["create_price"] = concurrent_sync

        plan = CatalogSynchronizer(fake_gateway).sync_plan(plan.pk)

        assert plan.stripe_price_monthly == "price_winner"
        duplicate = next(
            price
            for price in fake_gateway.prices.values()
            if price["metadata"]["interval"] == BillingInterval.MONTHLY
        )
        assert fake_gateway.calls_to("archive_price") == [duplicate["id"]]
        assert duplicate["active"] is False

    def test_archive_failure_after_lost_race_is_tolerated(self, fake_gateway):
        plan = PlanFactory()

        def concurrent_sync(params):
            Plan.objects.filter(pk=plan.pk).update(stripe_product_id="prod_winner")

        fake_gateway.before_create["create_product"] = concurrent_sync
        fake_gateway.fail_next("archive_product", GatewayError("rejected"))

        plan = CatalogSynchronizer(fake_gateway).sync_plan(plan.pk)

        assert plan.stripe_product_id == "prod_winner"
        prices = fake_gateway.prices.values()
        assert all(price["product"] == "prod_winner" for price in prices)

    def test_unknown_plan(self, db, fake_gateway):
        with pytest.raises(NotFoundError):
            CatalogSynchronizer(fake_gateway).sync_plan(999999)


@pytest.mark.django_db
class TestSyncCreditPackage:
    def test_creates_one_time_price(self, fake_gateway):
        package = CreditPackageFactory(credits=100, bonus_credits=20, price_eur=Decimal("9.99"))

        package = CatalogSynchronizer(fake_gateway).sync_credit_package(package.pk)

        price = fake_gateway.prices[package.stripe_price_id]
        assert price["unit_amount"] == 999
        assert price["recurring"] is None
        assert price["metadata"]["credits"] == "100"
        assert price["metadata"]["bonus_credits"] == "20"
        product = fake_gateway.products[package.stripe_product_id]
        assert product["description"] == "100 Credits + 20 Bonus"

    def test_second_sync_creates_nothing(self, fake_gateway):
        package = CreditPackageFactory()
        synchronizer = CatalogSynchronizer(fake_gateway)

        first = synchronizer.sync_credit_package(package.pk)
        second = synchronizer.sync_credit_package(package.pk)

        assert first.stripe_price_id == second.stripe_price_id
        assert len(fake_gateway.calls_to("create_product")) == 1
        assert len(fake_gateway.calls_to("create_price")) == 1

    def test_package_without_price_is_rejected(self, fake_gateway):
        package = CreditPackageFactory(price_eur=Decimal("0"))

        with pytest.raises(ConfigurationError):
            CatalogSynchronizer(fake_gateway).sync_credit_package(package.pk)
        assert fake_gateway.calls == []

    def test_unknown_package(self, db, fake_gateway):
        with pytest.raises(NotFoundError):
            CatalogSynchronizer(fake_gateway).sync_credit_package(999999)


@pytest.mark.django_db
class TestSyncAll:
    def test_syncs_active_items_that_need_it(self, fake_gateway):
        plan = PlanFactory()
        PlanFactory(is_active=False)
        package = CreditPackageFactory()

        results = CatalogSynchronizer(fake_gateway).sync_all()

        assert [(r.kind, r.item_id, r.success) for r in results] == [
            ("plan", plan.pk, True),
            ("package", package.pk, True),
        ]
        assert CatalogSynchronizer(fake_gateway).sync_all() == []

    def test_one_failure_does_not_stop_the_batch(self, fake_gateway):
        PlanFactory()
        CreditPackageFactory()
        fake_gateway.fail_next("create_product", GatewayError("rejected"))

        results = CatalogSynchronizer(fake_gateway).sync_all()

        assert [r.success for r in results] == [False, True]
        assert "rejected" in results[0].error

    def test_sync_status(self, fake_gateway):
        plan = PlanFactory()
        PlanFactory()
        CreditPackageFactory(stripe_product_id="prod_1", stripe_price_id="price_1")
        synchronizer = CatalogSynchronizer(fake_gateway)
        synchronizer.sync_plan(plan.pk)

        status = synchronizer.sync_status()

        assert status.synced_count == 2
        assert status.needs_sync_count == 1
        data = status.as_dict()
        assert data["summary"] == {"synced": 2, "needs_sync": 1}
        assert len(data["plans"]) == 2
        assert data["packages"][0]["needs_sync"] is False
