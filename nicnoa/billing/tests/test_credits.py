"""
Tests for credit balance operations and entitlement.

These tests cover:
- Purchases granted once per checkout session
- Usage that never overdraws the balance
- Manual adjustments with an audit trail
- Entitlement from subscription status and plan
"""

from http import HTTPStatus

import pytest
from django.urls import reverse

from nicnoa.billing.constants import CreditTransactionType
from nicnoa.billing.constants import SubscriptionStatus
from nicnoa.billing.credits import adjust_credits
from nicnoa.billing.credits import consume_credits
from nicnoa.billing.credits import credit_balance
from nicnoa.billing.credits import get_entitlement
from nicnoa.billing.credits import grant_credits
from nicnoa.billing.credits import included_credits
from nicnoa.billing.exceptions import InsufficientCreditsError
from nicnoa.billing.models import CreditTransaction
from nicnoa.billing.tests.factories import PlanFactory
from nicnoa.billing.tests.factories import SubscriptionFactory
from nicnoa.users.models import Role


@pytest.fixture
def funded_user(user):
    grant_credits(account=user, credits=120, checkout_session_id="cs_funded")
    return user


@pytest.mark.django_db
class TestGrantCredits:
    def test_grant_once_per_session(self, user):
        first = grant_credits(account=user, credits=120, checkout_session_id="cs_1")
        second = grant_credits(account=user, credits=120, checkout_session_id="cs_1")

        assert first is not None
        assert second is None
        assert credit_balance(user) == 120
        assert first.transaction_type == CreditTransactionType.PURCHASE
        assert user.credit_balance.lifetime_bought == 120

    def test_balance_without_purchases(self, user):
        assert credit_balance(user) == 0


@pytest.mark.django_db
class TestConsumeCredits:
    def test_usage_is_recorded(self, funded_user):
        entry = consume_credits(funded_user, 20, description="Caption generation")

        assert credit_balance(funded_user) == 100
        assert entry.transaction_type == CreditTransactionType.USAGE
        assert entry.amount == -20
        assert (entry.balance_before, entry.balance_after) == (120, 100)
        assert entry.description == "Caption generation"

    def test_exact_balance_can_be_spent(self, funded_user):
        consume_credits(funded_user, 120)

        assert credit_balance(funded_user) == 0

    def test_overdraft_is_rejected(self, funded_user):
        with pytest.raises(InsufficientCreditsError):
            consume_credits(funded_user, 121)

        assert credit_balance(funded_user) == 120
        assert not CreditTransaction.objects.filter(
            transaction_type=CreditTransactionType.USAGE,
        ).exists()

    def test_account_without_balance(self, user):
        with pytest.raises(InsufficientCreditsError):
            consume_credits(user, 1)

    @pytest.mark.parametrize("amount", [0, -5])
    def test_amount_must_be_positive(self, funded_user, amount):
        with pytest.raises(ValueError, match="positive"):
            consume_credits(funded_user, amount)


@pytest.mark.django_db
class TestAdjustCredits:
    def test_positive_and_negative_adjustments(self, funded_user):
        adjust_credits(funded_user, 30, description="Goodwill")
        entry = adjust_credits(funded_user, -50, description="Refunded purchase")

        assert credit_balance(funded_user) == 100
        assert entry.transaction_type == CreditTransactionType.ADJUSTMENT
        assert entry.amount == -50

    def test_adjustment_cannot_overdraw(self, funded_user):
        with pytest.raises(InsufficientCreditsError):
            adjust_credits(funded_user, -500, description="Too much")

        assert credit_balance(funded_user) == 120

    def test_adjustment_needs_description(self, funded_user):
        with pytest.raises(ValueError, match="description"):
            adjust_credits(funded_user, 10, description="")


@pytest.mark.django_db
class TestEntitlement:
    def test_entitled_subscription(self, funded_user):
        plan = PlanFactory(name="Pro", included_credits=50)
        SubscriptionFactory(account=funded_user, plan=plan)

        entitlement = get_entitlement(funded_user)

        assert entitlement.can_use_credits
        assert entitlement.included_credits == 50
        assert entitlement.balance == 120
        assert entitlement.plan_name == "Pro"
        assert included_credits(funded_user) == 50

    def test_canceled_subscription_has_no_access(self, user):
        SubscriptionFactory(
            account=user,
            plan=PlanFactory(included_credits=50),
            status=SubscriptionStatus.CANCELED,
        )

        entitlement = get_entitlement(user)

        assert not entitlement.can_use_credits
        assert entitlement.subscription_status == SubscriptionStatus.CANCELED
        assert entitlement.included_credits == 0

    def test_paused_subscription_has_no_access(self, user):
        SubscriptionFactory(account=user, is_paused=True)

        assert not get_entitlement(user).can_use_credits

    def test_no_subscription(self, user):
        entitlement = get_entitlement(user)

        assert entitlement.subscription_status == "none"
        assert not entitlement.can_use_credits

    def test_admin_always_has_access(self, user):
        user.role = Role.ADMIN
        user.save()

        assert get_entitlement(user).can_use_credits


@pytest.mark.django_db
def test_credit_status_view(client, funded_user):
    SubscriptionFactory(account=funded_user, plan=PlanFactory(name="Pro", included_credits=50))
    client.force_login(funded_user)

    response = client.get(reverse("billing:credits"))

    assert response.status_code == HTTPStatus.OK
    assert response.json() == {
        "can_use_credits": True,
        "has_subscription": True,
        "subscription_status": "active",
        "plan": "Pro",
        "included_credits": 50,
        "balance": 120,
    }
