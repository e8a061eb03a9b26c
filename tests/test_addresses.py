"""Tests for the address registry and the default-address invariant."""

import pytest

from addresses import AddressRegistry
from errors import ForbiddenError, InvalidArgumentError, NotFoundError, PartialSuccessError, StoreError

MISSING_ID = "5f1d7f8e9b1e8b3a4c2d1e0f"


def _user(store, user_id):
    return store.find_by_id("user", user_id)


class TestAddAddress:
    def test_first_address_becomes_default(self, addresses, store, user):
        address = addresses.add_address(user["id"], "1 Main St")
        doc = _user(store, user["id"])
        assert doc["address"] == [address["id"]]
        assert doc["default_address"] == address["id"]
        assert address["user"] == user["id"]

    def test_later_addresses_keep_existing_default(self, addresses, store, user):
        first = addresses.add_address(user["id"], "1 Main St")
        second = addresses.add_address(user["id"], "2 High St")
        doc = _user(store, user["id"])
        assert doc["address"] == [first["id"], second["id"]]
        assert doc["default_address"] == first["id"]

    def test_unknown_user_creates_nothing(self, addresses, store):
        with pytest.raises(NotFoundError):
            addresses.add_address(MISSING_ID, "1 Main St")
        assert store.count_documents("address") == 0

    def test_blank_detail(self, addresses, user):
        with pytest.raises(InvalidArgumentError):
            addresses.add_address(user["id"], "   ")

    def test_link_failure_is_reported(self, addresses, store, user):
        store.failing.add("user")
        with pytest.raises(PartialSuccessError) as exc:
            addresses.add_address(user["id"], "1 Main St")
        address_id = exc.value.data["address_id"]
        assert store.find_by_id("address", address_id) is not None
        store.failing.clear()
        assert _user(store, user["id"])["address"] == []


class TestDeleteAddress:
    def test_deleting_only_address_clears_default(self, addresses, store, user):
        only = addresses.add_address(user["id"], "1 Main St")
        addresses.delete_address(user["id"], only["id"])
        doc = _user(store, user["id"])
        assert doc["address"] == []
        assert doc["default_address"] is None
        assert store.find_by_id("address", only["id"]) is None

    def test_deleting_default_promotes_next(self, addresses, store, user):
        a1 = addresses.add_address(user["id"], "1 Main St")
        a2 = addresses.add_address(user["id"], "2 High St")
        addresses.delete_address(user["id"], a1["id"])
        doc = _user(store, user["id"])
        assert doc["address"] == [a2["id"]]
        assert doc["default_address"] == a2["id"]

    def test_deleting_default_promotes_exactly_first_remaining(self, addresses, store, user):
        a1 = addresses.add_address(user["id"], "1 Main St")
        a2 = addresses.add_address(user["id"], "2 High St")
        a3 = addresses.add_address(user["id"], "3 Low St")
        addresses.set_default_address(user["id"], a2["id"])
        addresses.delete_address(user["id"], a2["id"])
        doc = _user(store, user["id"])
        assert doc["address"] == [a1["id"], a3["id"]]
        assert doc["default_address"] == a1["id"]

    def test_deleting_non_default_keeps_default(self, addresses, store, user):
        a1 = addresses.add_address(user["id"], "1 Main St")
        a2 = addresses.add_address(user["id"], "2 High St")
        addresses.delete_address(user["id"], a2["id"])
        assert _user(store, user["id"])["default_address"] == a1["id"]

    def test_address_not_owned(self, addresses, make_user, user):
        other = make_user("bob")
        theirs = addresses.add_address(other["id"], "9 Far Rd")
        with pytest.raises(NotFoundError):
            addresses.delete_address(user["id"], theirs["id"])

    def test_record_delete_failure_leaves_user_consistent(self, addresses, store, user):
        a1 = addresses.add_address(user["id"], "1 Main St")
        store.failing_deletes.add("address")
        with pytest.raises(PartialSuccessError):
            addresses.delete_address(user["id"], a1["id"])
        store.failing_deletes.clear()
        doc = _user(store, user["id"])
        assert doc["address"] == []
        assert doc["default_address"] is None
        assert store.find_by_id("address", a1["id"])["deleted"] is True

    def test_repair_finishes_interrupted_delete(self, addresses, services, store, user):
        a1 = addresses.add_address(user["id"], "1 Main St")
        store.failing_deletes.add("address")
        with pytest.raises(PartialSuccessError):
            addresses.delete_address(user["id"], a1["id"])
        store.failing_deletes.clear()

        report = services.auditor.repair_user(user["id"])

        assert report.abandoned_addresses == [a1["id"]]
        assert report.orphan_addresses == []
        doc = _user(store, user["id"])
        assert doc["address"] == []
        assert doc["default_address"] is None
        assert store.find_by_id("address", a1["id"]) is None

    def test_marked_address_is_hidden(self, addresses, store, user):
        a1 = addresses.add_address(user["id"], "1 Main St")
        a2 = addresses.add_address(user["id"], "2 High St")
        store.failing_deletes.add("address")
        with pytest.raises(PartialSuccessError):
            addresses.delete_address(user["id"], a1["id"])
        store.failing_deletes.clear()

        assert addresses.find_address(a1["id"]) is None
        with pytest.raises(NotFoundError):
            addresses.update_address(user["id"], a1["id"], "Back again")
        assert [a["id"] for a in addresses.list_addresses(user["id"])["address"]] == [a2["id"]]

    def test_unlink_failure_keeps_user_and_marks_record(self, addresses, services, store, user):
        a1 = addresses.add_address(user["id"], "1 Main St")
        store.failing.add("user")
        with pytest.raises(PartialSuccessError):
            addresses.delete_address(user["id"], a1["id"])
        store.failing.clear()
        assert _user(store, user["id"])["address"] == [a1["id"]]

        services.auditor.repair_user(user["id"])
        doc = _user(store, user["id"])
        assert doc["address"] == []
        assert doc["default_address"] is None
        assert store.find_by_id("address", a1["id"]) is None

    def test_mark_failure_changes_nothing(self, addresses, store, user):
        a1 = addresses.add_address(user["id"], "1 Main St")
        store.failing.add("address")
        with pytest.raises(StoreError):
            addresses.delete_address(user["id"], a1["id"])
        store.failing.clear()
        assert _user(store, user["id"])["address"] == [a1["id"]]
        assert store.find_by_id("address", a1["id"])["deleted"] is False

    def test_dangling_reference_can_be_deleted(self, addresses, store, user):
        a1 = addresses.add_address(user["id"], "1 Main St")
        a2 = addresses.add_address(user["id"], "2 High St")
        store.delete_by_id("address", a1["id"])
        addresses.delete_address(user["id"], a1["id"])
        doc = _user(store, user["id"])
        assert doc["address"] == [a2["id"]]
        assert doc["default_address"] == a2["id"]


class TestUpdateAddress:
    def test_owner_can_update(self, addresses, user):
        address = addresses.add_address(user["id"], "1 Main St")
        updated = addresses.update_address(user["id"], address["id"], "1 Main Street")
        assert updated["detail"] == "1 Main Street"

    def test_other_user_is_forbidden(self, addresses, make_user, user):
        address = addresses.add_address(user["id"], "1 Main St")
        other = make_user("bob")
        with pytest.raises(ForbiddenError):
            addresses.update_address(other["id"], address["id"], "Hijacked")

    def test_missing_address(self, addresses, user):
        with pytest.raises(NotFoundError):
            addresses.update_address(user["id"], MISSING_ID, "x")


class TestSetDefaultAddress:
    def test_switch_default(self, addresses, store, user):
        addresses.add_address(user["id"], "1 Main St")
        a2 = addresses.add_address(user["id"], "2 High St")
        addresses.set_default_address(user["id"], a2["id"])
        assert _user(store, user["id"])["default_address"] == a2["id"]

    def test_foreign_address_is_forbidden(self, addresses, store, make_user, user):
        mine = addresses.add_address(user["id"], "1 Main St")
        other = make_user("bob")
        theirs = addresses.add_address(other["id"], "9 Far Rd")
        with pytest.raises(ForbiddenError):
            addresses.set_default_address(user["id"], theirs["id"])
        assert _user(store, user["id"])["default_address"] == mine["id"]

    def test_ownership_check_can_be_disabled(self, store, make_user, user):
        registry = AddressRegistry(store, enforce_ownership=False)
        other = make_user("bob")
        theirs = registry.add_address(other["id"], "9 Far Rd")
        registry.set_default_address(user["id"], theirs["id"])
        assert _user(store, user["id"])["default_address"] == theirs["id"]

    @pytest.mark.parametrize("missing", ["user", "address"])
    def test_missing_user_or_address(self, addresses, user, missing):
        address = addresses.add_address(user["id"], "1 Main St")
        user_id = MISSING_ID if missing == "user" else user["id"]
        address_id = MISSING_ID if missing == "address" else address["id"]
        with pytest.raises(NotFoundError):
            addresses.set_default_address(user_id, address_id)


def test_list_addresses(addresses, user):
    a1 = addresses.add_address(user["id"], "1 Main St")
    a2 = addresses.add_address(user["id"], "2 High St")
    listing = addresses.list_addresses(user["id"])
    assert [a["id"] for a in listing["address"]] == [a1["id"], a2["id"]]
    assert listing["default_address"]["id"] == a1["id"]
