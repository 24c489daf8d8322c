import fnmatch
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

import commerce.auth
from commerce.cache import Cache
from commerce.config import Settings
from commerce.events import EventPublisher
from commerce.main import create_app
from commerce.schemas import Address, LineItem
from commerce.services import build_services


class FakeRedis:
    """Just enough of redis.Redis for the cache layer."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    def get(self, key):
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self.data[key] = value
        self.ttls[key] = ttl

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    def scan_iter(self, match="*"):
        return [key for key in list(self.data) if fnmatch.fnmatch(key, match)]

    def ping(self):
        return True

    def close(self):
        pass


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret="whsec_test",
        jwt_secret="test-secret",
        log_json=False,
    )


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis):
    return Cache(fake_redis, default_ttl=600)


@pytest.fixture
def publisher(mocker):
    return mocker.Mock(spec=EventPublisher)


@pytest.fixture
def services(settings, cache, publisher):
    services = build_services(settings, cache=cache, publisher=publisher)
    yield services
    services.engine.dispose()


@pytest.fixture
def orders(services):
    return services.orders


@pytest.fixture
def payments(services):
    return services.payments


@pytest.fixture
def client(settings, services):
    app = create_app(settings, services)
    # Bypass auth verification for tests
    app.dependency_overrides[commerce.auth.verify_token] = lambda: {"sub": "user-1"}
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def address():
    return Address(street="1 Main St", city="Springfield", country="US", postal_code="12345")


@pytest.fixture
def items():
    return [
        LineItem(product_id="prod-1", product_name="Shirt", price=Decimal("29.99"), quantity=2),
        LineItem(product_id="prod-2", product_name="Shoes", price=Decimal("49.99"), quantity=1),
    ]
