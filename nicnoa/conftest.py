import pytest
from django.apps import apps

from nicnoa.billing.tests.fakes import FakeGateway
from nicnoa.users.models import User
from nicnoa.users.tests.factories import UserFactory


@pytest.fixture
def user(db) -> User:
    return UserFactory()


@pytest.fixture
def staff_user(db) -> User:
    return UserFactory(is_staff=True)


@pytest.fixture
def fake_gateway(monkeypatch) -> FakeGateway:
    """
    In-memory Stripe stand-in, also installed as the app-wide gateway.

    Services that take a gateway get it passed explicitly; views pick it up
    through ``get_gateway``.
    """
    gateway = FakeGateway()
    monkeypatch.setattr(apps.get_app_config("billing"), "gateway", gateway)
    return gateway
