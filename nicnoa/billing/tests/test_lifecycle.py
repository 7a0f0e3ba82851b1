"""
Tests for subscription lifecycle requests.

Each operation must send exactly one state-changing request to Stripe and
leave the local mirror alone.
"""

import pytest

from nicnoa.billing.constants import BillingInterval
from nicnoa.billing.constants import SubscriptionStatus
from nicnoa.billing.exceptions import ConfigurationError
from nicnoa.billing.exceptions import NotFoundError
from nicnoa.billing.lifecycle import SubscriptionLifecycle
from nicnoa.billing.lifecycle import resolve_price_id
from nicnoa.billing.tests.factories import PlanFactory
from nicnoa.billing.tests.factories import SubscriptionFactory
from nicnoa.billing.tests.factories import SyncedPlanFactory


@pytest.fixture
def stripe_subscription(fake_gateway):
    return fake_gateway.add_subscription(
        "sub_123",
        customer="cus_123",
        price_id="price_monthly",
    )


class TestLifecycleRequests:
    def test_cancel_at_period_end(self, fake_gateway, stripe_subscription):
        SubscriptionLifecycle(fake_gateway).cancel("sub_123")

        assert fake_gateway.calls_to("update_subscription") == [
            ("sub_123", {"cancel_at_period_end": True}),
        ]

    def test_cancel_immediately(self, fake_gateway, stripe_subscription):
        result = SubscriptionLifecycle(fake_gateway).cancel_immediately("sub_123")

        assert result["status"] == "canceled"
        assert fake_gateway.calls_to("cancel_subscription") == ["sub_123"]

    def test_pause_voids_invoices(self, fake_gateway, stripe_subscription):
        SubscriptionLifecycle(fake_gateway).pause("sub_123")

        assert fake_gateway.calls_to("update_subscription") == [
            ("sub_123", {"pause_collection": {"behavior": "void"}}),
        ]

    def test_resume_clears_pause(self, fake_gateway, stripe_subscription):
        SubscriptionLifecycle(fake_gateway).resume("sub_123")

        assert fake_gateway.calls_to("update_subscription") == [
            ("sub_123", {"pause_collection": ""}),
        ]

    def test_change_plan_swaps_single_item(self, fake_gateway, stripe_subscription):
        SubscriptionLifecycle(fake_gateway).change_plan("sub_123", "price_yearly")

        assert fake_gateway.calls_to("update_subscription") == [
            (
                "sub_123",
                {
                    "items": [{"id": "si_1", "price": "price_yearly"}],
                    "proration_behavior": "create_prorations",
                },
            ),
        ]

    def test_change_plan_rejects_multi_item_subscription(self, fake_gateway):
        fake_gateway.add_subscription(
            "sub_multi",
            customer="cus_123",
            price_id="price_monthly",
            item_ids=("si_1", "si_2"),
        )

        with pytest.raises(ConfigurationError):
            SubscriptionLifecycle(fake_gateway).change_plan("sub_multi", "price_yearly")
        assert fake_gateway.calls_to("update_subscription") == []

    def test_unknown_subscription(self, fake_gateway):
        with pytest.raises(NotFoundError):
            SubscriptionLifecycle(fake_gateway).change_plan("sub_missing", "price_yearly")


@pytest.mark.django_db
class TestChangePlanTo:
    def test_resolves_price_for_interval(self, fake_gateway, stripe_subscription):
        plan = SyncedPlanFactory()

        SubscriptionLifecycle(fake_gateway).change_plan_to(
            "sub_123",
            plan.pk,
            BillingInterval.YEARLY,
        )

        [(_, params)] = fake_gateway.calls_to("update_subscription")
        assert params["items"] == [{"id": "si_1", "price": plan.stripe_price_yearly}]

    def test_mirror_is_not_written(self, fake_gateway):
        subscription = SubscriptionFactory(stripe_subscription_id="sub_mirror")
        fake_gateway.add_subscription(
            "sub_mirror",
            customer=subscription.stripe_customer_id,
            price_id=subscription.plan.stripe_price_monthly,
        )
        lifecycle = SubscriptionLifecycle(fake_gateway)

        lifecycle.cancel("sub_mirror")
        lifecycle.pause("sub_mirror")

        subscription.refresh_from_db()
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert not subscription.cancel_at_period_end
        assert not subscription.is_paused

    def test_unsynced_target(self, fake_gateway, stripe_subscription):
        plan = PlanFactory()

        with pytest.raises(ConfigurationError):
            SubscriptionLifecycle(fake_gateway).change_plan_to(
                "sub_123",
                plan.pk,
                BillingInterval.YEARLY,
            )
        assert fake_gateway.calls == []

    def test_resolve_price_id_unknown_plan(self):
        with pytest.raises(NotFoundError):
            resolve_price_id(999999, BillingInterval.MONTHLY)
