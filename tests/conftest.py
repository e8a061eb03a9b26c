"""Pytest fixtures for the commerce backend tests."""

import pytest
from fastapi.testclient import TestClient
from pydantic import SecretStr

from config import Settings
from database import MemoryEntityStore
from errors import StoreError
from main import Services, create_app
from schemas import Product


class FlakyStore(MemoryEntityStore):
    """Memory store whose writes to chosen collections can be made to fail.

    ``failing`` breaks updates and deletes; ``failing_deletes`` breaks deletes only.
    """

    def __init__(self):
        super().__init__()
        self.failing = set()
        self.failing_deletes = set()

    def update_by_id(self, collection, entity_id, changes, expected_version=None):
        if collection in self.failing:
            raise StoreError(f"Simulated failure updating {collection}")
        return super().update_by_id(collection, entity_id, changes, expected_version)

    def delete_by_id(self, collection, entity_id):
        if collection in self.failing or collection in self.failing_deletes:
            raise StoreError(f"Simulated failure deleting {collection}")
        return super().delete_by_id(collection, entity_id)


def make_settings(**overrides):
    values = {
        "database_url": None,
        "database_name": None,
        "jwt_secret": SecretStr("test-secret"),
        "log_format": "console",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def services(settings, store):
    return Services(settings, store)


@pytest.fixture
def build_services(store):
    """Services over the shared store with some settings overridden."""

    def _build(**overrides):
        return Services(make_settings(**overrides), store)

    return _build


@pytest.fixture
def carts(services):
    return services.carts


@pytest.fixture
def addresses(services):
    return services.addresses


@pytest.fixture
def orders(services):
    return services.orders


@pytest.fixture
def make_user(services):
    counter = {"n": 0}

    def _make(username=None, password="secret"):
        counter["n"] += 1
        return services.accounts.register(username or f"user{counter['n']}", password)

    return _make


@pytest.fixture
def make_product(services):
    def _make(name="Ring", price=10.0, **fields):
        return services.catalog.create_product(Product(name=name, price=price, **fields))

    return _make


@pytest.fixture
def user(make_user):
    return make_user("alice")


@pytest.fixture
def product(make_product):
    return make_product("Ring", 10.0)


# API

@pytest.fixture
def client(settings, store):
    return TestClient(create_app(settings, store))


@pytest.fixture
def login(client):
    """Register (if needed) and log in; returns (user, auth headers)."""

    def _login(username, password="secret", role=None):
        resp = client.post("/api/register", json={"username": username, "password": password})
        assert resp.status_code in (200, 409)
        if role:
            user_id = client.app.state.services.store.find_one("user", {"username": username})["id"]
            client.app.state.services.store.update_by_id("user", user_id, {"role": role})
        resp = client.post("/api/login", json={"username": username, "password": password})
        assert resp.status_code == 200
        data = resp.json()["data"]
        return data["user"], {"Authorization": f"Bearer {data['token']}"}

    return _login
