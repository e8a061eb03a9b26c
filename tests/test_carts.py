"""Tests for the cart manager: additive merge, overwrite and resolution."""

import pytest

from errors import InvalidArgumentError, NotFoundError


class TestAddToCart:
    def test_same_product_merges_quantities(self, carts, user, product):
        carts.add_to_cart(user["id"], product["id"], 1)
        carts.add_to_cart(user["id"], product["id"], 3)

        cart = carts.list_cart(user["id"])
        assert len(cart["items"]) == 1
        assert cart["items"][0]["product"]["id"] == product["id"]
        assert cart["items"][0]["quantity"] == 4

    def test_distinct_products_get_distinct_lines(self, carts, user, make_product):
        ring = make_product("Ring", 10.0)
        chain = make_product("Chain", 2.5)
        carts.add_to_cart(user["id"], ring["id"], 1)
        lines = carts.add_to_cart(user["id"], chain["id"], 2)
        assert [(line["product"], line["quantity"]) for line in lines] == [(ring["id"], 1), (chain["id"], 2)]

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, True, "2"])
    def test_non_positive_or_non_integer_quantity(self, carts, store, user, product, quantity):
        with pytest.raises(InvalidArgumentError):
            carts.add_to_cart(user["id"], product["id"], quantity)
        assert store.find_by_id("user", user["id"])["cart"] == []

    def test_unknown_product(self, carts, user):
        with pytest.raises(NotFoundError):
            carts.add_to_cart(user["id"], "5f1d7f8e9b1e8b3a4c2d1e0f", 1)

    def test_unknown_user(self, carts, product):
        with pytest.raises(NotFoundError):
            carts.add_to_cart("5f1d7f8e9b1e8b3a4c2d1e0f", product["id"], 1)


class TestRemoveFromCart:
    def test_removes_line(self, carts, user, product):
        carts.add_to_cart(user["id"], product["id"], 2)
        assert carts.remove_from_cart(user["id"], product["id"]) == []

    def test_absent_line_is_not_an_error(self, carts, store, user, product):
        version = store.find_by_id("user", user["id"])["version"]
        assert carts.remove_from_cart(user["id"], product["id"]) == []
        assert store.find_by_id("user", user["id"])["version"] == version


class TestSetQuantity:
    def test_overwrites_instead_of_adding(self, carts, user, product):
        carts.add_to_cart(user["id"], product["id"], 5)
        lines = carts.set_quantity(user["id"], product["id"], 2)
        assert lines == [{"product": product["id"], "quantity": 2}]

    def test_missing_line_fails_without_mutation(self, carts, store, user, product):
        before = store.find_by_id("user", user["id"])
        with pytest.raises(NotFoundError):
            carts.set_quantity(user["id"], product["id"], 2)
        after = store.find_by_id("user", user["id"])
        assert after["cart"] == []
        assert after["version"] == before["version"]

    def test_rejects_zero(self, carts, user, product):
        carts.add_to_cart(user["id"], product["id"], 1)
        with pytest.raises(InvalidArgumentError):
            carts.set_quantity(user["id"], product["id"], 0)


class TestListCart:
    def test_skips_vanished_products(self, carts, store, user, make_product):
        ring = make_product("Ring", 10.0)
        gone = make_product("Gone", 99.0)
        carts.add_to_cart(user["id"], ring["id"], 2)
        carts.add_to_cart(user["id"], gone["id"], 1)
        store.delete_by_id("product", gone["id"])

        cart = carts.list_cart(user["id"])
        assert [i["product"]["id"] for i in cart["items"]] == [ring["id"]]
        assert cart["total"] == 20.0

    def test_totals_use_live_prices(self, carts, user, make_product):
        a = make_product("A", 0.1)
        b = make_product("B", 0.2)
        carts.add_to_cart(user["id"], a["id"], 1)
        carts.add_to_cart(user["id"], b["id"], 1)
        assert carts.list_cart(user["id"])["total"] == 0.3

    def test_clear_lines(self, carts, user, make_product):
        a = make_product("A", 1.0)
        b = make_product("B", 2.0)
        carts.add_to_cart(user["id"], a["id"], 1)
        carts.add_to_cart(user["id"], b["id"], 1)
        assert carts.clear_lines(user["id"], [a["id"]]) == [{"product": b["id"], "quantity": 1}]
