"""Tests for the consistency auditor."""

import pytest

from errors import NotFoundError, PartialSuccessError


def _line(product, quantity=1):
    return {"product_id": product["id"], "quantity": quantity}


@pytest.fixture
def auditor(services):
    return services.auditor


def test_fresh_user_is_consistent(auditor, addresses, orders, user, product):
    addresses.add_address(user["id"], "1 Main St")
    orders.create_order(user["id"], [_line(product)])
    assert auditor.audit_user(user["id"]).consistent


def test_unlinked_order_is_found_and_repaired(auditor, orders, store, user, product):
    store.failing.add("user")
    with pytest.raises(PartialSuccessError) as exc:
        orders.create_order(user["id"], [_line(product)])
    store.failing.clear()
    order_id = exc.value.data["order_id"]

    report = auditor.audit_user(user["id"])
    assert report.orphan_orders == [order_id]
    assert not report.consistent

    auditor.repair_user(user["id"])
    assert store.find_by_id("user", user["id"])["orders"] == [order_id]
    assert auditor.audit_user(user["id"]).consistent


def test_dangling_order_reference_is_dropped(auditor, orders, store, user, product):
    kept = orders.create_order(user["id"], [_line(product)])
    lost = orders.create_order(user["id"], [_line(product)])
    store.delete_by_id("order", lost["id"])

    report = auditor.repair_user(user["id"])

    assert report.dangling_orders == [lost["id"]]
    assert store.find_by_id("user", user["id"])["orders"] == [kept["id"]]


def test_missing_default_address_is_reassigned(auditor, addresses, store, user):
    a1 = addresses.add_address(user["id"], "1 Main St")
    a2 = addresses.add_address(user["id"], "2 High St")
    store.delete_by_id("address", a1["id"])

    report = auditor.audit_user(user["id"])
    assert report.dangling_addresses == [a1["id"]]
    assert report.invalid_default

    auditor.repair_user(user["id"])
    doc = store.find_by_id("user", user["id"])
    assert doc["address"] == [a2["id"]]
    assert doc["default_address"] == a2["id"]


def test_unlinked_address_is_adopted(auditor, addresses, store, user):
    store.failing.add("user")
    with pytest.raises(PartialSuccessError):
        addresses.add_address(user["id"], "1 Main St")
    store.failing.clear()

    auditor.repair_user(user["id"])
    doc = store.find_by_id("user", user["id"])
    assert len(doc["address"]) == 1
    assert doc["default_address"] == doc["address"][0]


def test_repair_of_consistent_user_writes_nothing(auditor, store, user):
    version = store.find_by_id("user", user["id"])["version"]
    assert auditor.repair_user(user["id"]).consistent
    assert store.find_by_id("user", user["id"])["version"] == version


def test_unknown_user(auditor):
    with pytest.raises(NotFoundError):
        auditor.audit_user("5f1d7f8e9b1e8b3a4c2d1e0f")
