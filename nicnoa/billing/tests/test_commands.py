from decimal import Decimal
from io import StringIO

import pytest
from django.core.management import call_command
from django.core.management.base import CommandError

from nicnoa.billing.exceptions import GatewayError
from nicnoa.billing.models import CreditPackage
from nicnoa.billing.models import Plan
from nicnoa.billing.tests.factories import CreditPackageFactory
from nicnoa.billing.tests.factories import PlanFactory


def run(*args) -> str:
    out = StringIO()
    call_command(*args, stdout=out)
    return out.getvalue()


@pytest.mark.django_db
class TestSeedPlans:
    def test_creates_plans_and_packages(self):
        output = run("seed_plans")

        assert Plan.objects.count() == 4
        assert CreditPackage.objects.count() == 3
        starter = Plan.objects.get(slug="stylist-starter")
        assert starter.price_monthly == Decimal("29.00")
        assert starter.price_yearly == Decimal("290.00")
        assert starter.trial_days == 14
        assert "not synced to Stripe" in output
        assert "Done!" in output

    def test_rerun_creates_nothing(self):
        run("seed_plans")
        output = run("seed_plans")

        assert Plan.objects.count() == 4
        assert "Exists: Starter" in output

    def test_force_never_changes_a_synced_price(self):
        run("seed_plans")
        Plan.objects.filter(slug="stylist-starter").update(
            price_monthly=Decimal("25.00"),
            stripe_product_id="prod_1",
            stripe_price_monthly="price_1",
        )

        output = run("seed_plans", "--force")

        starter = Plan.objects.get(slug="stylist-starter")
        assert starter.price_monthly == Decimal("25.00")
        assert "Skipped: Starter" in output
        assert "Updated: Professional" in output

    def test_sync(self, fake_gateway):
        output = run("seed_plans", "--sync")

        assert not any(plan.needs_sync for plan in Plan.objects.all())
        assert not any(package.needs_sync for package in CreditPackage.objects.all())
        assert len(fake_gateway.products) == 7
        assert "not synced to Stripe" not in output


@pytest.mark.django_db
class TestSyncStripeCatalog:
    def test_requires_an_option(self):
        with pytest.raises(CommandError):
            run("sync_stripe_catalog")

    def test_status(self, fake_gateway):
        PlanFactory(name="Starter")

        output = run("sync_stripe_catalog", "--status")

        assert "Starter: needs sync" in output
        assert "0 synced, 1 need a sync" in output
        assert fake_gateway.calls == []

    def test_sync_plan(self, fake_gateway):
        plan = PlanFactory(name="Starter")

        output = run("sync_stripe_catalog", "--plan", str(plan.pk))

        plan.refresh_from_db()
        assert not plan.needs_sync
        assert f"Yearly: Synced(external_id='{plan.stripe_price_yearly}')" in output

    def test_sync_package(self, fake_gateway):
        package = CreditPackageFactory()

        run("sync_stripe_catalog", "--package", str(package.pk))

        package.refresh_from_db()
        assert package.stripe_price_id in fake_gateway.prices

    def test_unknown_plan(self, fake_gateway):
        with pytest.raises(CommandError):
            run("sync_stripe_catalog", "--plan", "999999")

    def test_all_reports_failures(self, fake_gateway):
        PlanFactory()
        CreditPackageFactory()
        fake_gateway.fail_next("create_product", GatewayError("rejected"))

        with pytest.raises(CommandError, match="1 of 2"):
            run("sync_stripe_catalog", "--all")
