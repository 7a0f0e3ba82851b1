"""
Tests for the proration preview.

Amounts come from the fake gateway's model: half of the current period is
unused, so a monthly (29.00) to yearly (290.00) switch credits 14.50 and
charges 145.00 right away.
"""

from unittest.mock import MagicMock
from unittest.mock import PropertyMock
from unittest.mock import patch

import pytest
import stripe

from nicnoa.billing.catalog import CatalogSynchronizer
from nicnoa.billing.constants import BillingInterval
from nicnoa.billing.exceptions import ProrationPreviewError
from nicnoa.billing.gateway import StripeGateway
from nicnoa.billing.proration import ProrationCalculator
from nicnoa.billing.proration import is_proration_line
from nicnoa.billing.tests.factories import PlanFactory


@pytest.fixture
def synced_plan(db, fake_gateway):
    return CatalogSynchronizer(fake_gateway).sync_plan(PlanFactory().pk)


@pytest.fixture
def monthly_subscription(fake_gateway, synced_plan):
    return fake_gateway.add_subscription(
        "sub_123",
        customer="cus_123",
        price_id=synced_plan.stripe_price_monthly,
    )


@pytest.mark.django_db
class TestPreview:
    def test_upgrade_monthly_to_yearly(self, fake_gateway, synced_plan, monthly_subscription):
        preview = ProrationCalculator(fake_gateway).preview(
            "sub_123",
            synced_plan.stripe_price_yearly,
        )

        assert preview.immediate == 13050
        assert preview.next_invoice == 29000
        assert preview.currency == "eur"
        assert preview.cutover.microsecond == 0

    def test_downgrade_is_a_credit(self, fake_gateway, synced_plan):
        fake_gateway.add_subscription(
            "sub_yearly",
            customer="cus_123",
            price_id=synced_plan.stripe_price_yearly,
        )

        preview = ProrationCalculator(fake_gateway).preview(
            "sub_yearly",
            synced_plan.stripe_price_monthly,
        )

        assert preview.immediate == -13050
        assert preview.next_invoice == 2900

    def test_preview_request(self, fake_gateway, synced_plan, monthly_subscription):
        preview = ProrationCalculator(fake_gateway).preview(
            "sub_123",
            synced_plan.stripe_price_quarterly,
        )

        [params] = fake_gateway.calls_to("preview_invoice")
        assert params["customer"] == "cus_123"
        assert params["subscription"] == "sub_123"
        details = params["subscription_details"]
        assert details["items"] == [
            {"id": "si_1", "price": synced_plan.stripe_price_quarterly},
        ]
        assert details["proration_behavior"] == "create_prorations"
        assert details["proration_date"] == int(preview.cutover.timestamp())

    def test_preview_is_read_only(self, fake_gateway, synced_plan, monthly_subscription):
        calculator = ProrationCalculator(fake_gateway)

        calculator.preview("sub_123", synced_plan.stripe_price_yearly)
        calculator.preview("sub_123", synced_plan.stripe_price_yearly)

        assert fake_gateway.calls_to("update_subscription") == []
        assert fake_gateway.subscriptions["sub_123"]["items"]["data"][0]["price"] == {
            "id": synced_plan.stripe_price_monthly,
        }

    def test_as_dict(self, fake_gateway, synced_plan, monthly_subscription):
        preview = ProrationCalculator(fake_gateway).preview(
            "sub_123",
            synced_plan.price_ref(BillingInterval.YEARLY).external_id,
        )

        data = preview.as_dict()
        assert data["immediate"] == 13050
        assert data["next_invoice"] == 29000
        assert data["cutover"] == preview.cutover.isoformat()

    def test_unknown_subscription(self, fake_gateway, synced_plan):
        calculator = ProrationCalculator(fake_gateway)

        with pytest.raises(ProrationPreviewError):
            calculator.preview("sub_missing", synced_plan.stripe_price_yearly)
        assert calculator.preview_or_none("sub_missing", synced_plan.stripe_price_yearly) is None

    def test_multi_item_subscription(self, fake_gateway, synced_plan):
        fake_gateway.add_subscription(
            "sub_multi",
            customer="cus_123",
            price_id=synced_plan.stripe_price_monthly,
            item_ids=("si_1", "si_2"),
        )

        with pytest.raises(ProrationPreviewError):
            ProrationCalculator(fake_gateway).preview(
                "sub_multi",
                synced_plan.stripe_price_yearly,
            )


class TestPreviewWithStripeObjects:
    """The real gateway hands SDK objects back as plain dicts."""

    @pytest.fixture
    def stripe_client(self):
        with patch.object(StripeGateway, "client", new_callable=PropertyMock) as prop:
            prop.return_value = MagicMock()
            yield prop.return_value

    @pytest.fixture
    def calculator(self, stripe_client):
        stripe_client.v1.subscriptions.retrieve.return_value = stripe.StripeObject.construct_from(
            {
                "id": "sub_123",
                "object": "subscription",
                "customer": "cus_123",
                "items": {"object": "list", "data": [{"id": "si_1", "price": {"id": "price_m"}}]},
            },
            "sk_test_123",
        )
        return ProrationCalculator(StripeGateway("sk_test_123"))

    def test_lines_with_parent_details_only(self, calculator, stripe_client):
        stripe_client.v1.invoices.create_preview.return_value = stripe.StripeObject.construct_from(
            {
                "object": "invoice",
                "currency": "eur",
                "lines": {
                    "object": "list",
                    "data": [
                        {
                            "amount": -1450,
                            "parent": {"subscription_item_details": {"proration": True}},
                        },
                        {
                            "amount": 14500,
                            "parent": {"subscription_item_details": {"proration": True}},
                        },
                        {
                            "amount": 29000,
                            "parent": {"subscription_item_details": {"proration": False}},
                        },
                    ],
                },
            },
            "sk_test_123",
        )

        preview = calculator.preview("sub_123", "price_y")

        assert preview.immediate == 13050
        assert preview.next_invoice == 29000
        assert preview.currency == "eur"

    def test_malformed_invoice_is_a_soft_failure(self, calculator, stripe_client):
        stripe_client.v1.invoices.create_preview.return_value = stripe.StripeObject.construct_from(
            {"object": "invoice", "lines": {"object": "list", "data": [{"parent": None}]}},
            "sk_test_123",
        )

        assert calculator.preview_or_none("sub_123", "price_y") is None


@pytest.mark.parametrize(
    ("line", "expected"),
    [
        ({"amount": 100, "proration": True}, True),
        ({"amount": 100, "proration": False}, False),
        (
            {
                "amount": 100,
                "parent": {"subscription_item_details": {"proration": True}},
            },
            True,
        ),
        ({"amount": 100, "parent": {"subscription_item_details": {}}}, False),
        ({"amount": 100, "parent": None}, False),
    ],
)
def test_is_proration_line(line, expected):
    assert is_proration_line(line) is expected
