"""
Cart Manager.

A user's cart is the ``cart`` array of its user document: at most one
``{product, quantity}`` line per product. Every change is a versioned
read-modify-write of the user document.
"""

from typing import Any, Dict, Iterable, List

from database import EntityStore, mutate_document
from errors import InvalidArgumentError, NotFoundError
from logging_config import get_logger
from pricing import compute_total

logger = get_logger("carts")


def check_quantity(quantity: Any) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidArgumentError(f"Quantity must be a positive integer, got {quantity!r}")
    return quantity


class CartManager:
    def __init__(self, store: EntityStore, max_update_retries: int = 5):
        self.store = store
        self.max_update_retries = max_update_retries

    def _mutate_user(self, user_id, mutate):
        return mutate_document(self.store, "user", user_id, mutate, attempts=self.max_update_retries)

    def add_to_cart(self, user_id: str, product_id: str, quantity: int) -> List[Dict[str, Any]]:
        """Add ``quantity`` of a product, merging into an existing line."""
        check_quantity(quantity)
        if self.store.find_by_id("user", user_id) is None:
            raise NotFoundError("User", user_id)
        product = self.store.find_by_id("product", product_id)
        if product is None:
            raise NotFoundError("Product", product_id)
        product_id = product["id"]

        def merge(user):
            cart = user.get("cart", [])
            # update quantity or add new item
            updated = False
            for item in cart:
                if item["product"] == product_id:
                    item["quantity"] += quantity
                    updated = True
            if not updated:
                cart.append({"product": product_id, "quantity": quantity})
            return {"cart": cart}

        user = self._mutate_user(user_id, merge)
        logger.info("cart_item_added", user_id=user_id, product_id=product_id, quantity=quantity)
        return user["cart"]

    def remove_from_cart(self, user_id: str, product_id: str) -> List[Dict[str, Any]]:
        def drop(user):
            cart = user.get("cart", [])
            remaining = [item for item in cart if item["product"] != product_id]
            if len(remaining) == len(cart):
                return None
            return {"cart": remaining}

        user = self._mutate_user(user_id, drop)
        return user.get("cart", [])

    def set_quantity(self, user_id: str, product_id: str, quantity: int) -> List[Dict[str, Any]]:
        """Overwrite the quantity of an existing line (not additive)."""
        check_quantity(quantity)

        def overwrite(user):
            cart = user.get("cart", [])
            line = next((item for item in cart if item["product"] == product_id), None)
            if line is None:
                raise NotFoundError("Cart item", product_id, message="Product not found in cart")
            line["quantity"] = quantity
            return {"cart": cart}

        user = self._mutate_user(user_id, overwrite)
        return user["cart"]

    def clear_lines(self, user_id: str, product_ids: Iterable[str]) -> List[Dict[str, Any]]:
        """Drop the lines of the given products, e.g. once they were ordered."""
        doomed = set(product_ids)

        def drop(user):
            cart = user.get("cart", [])
            remaining = [item for item in cart if item["product"] not in doomed]
            if len(remaining) == len(cart):
                return None
            return {"cart": remaining}

        user = self._mutate_user(user_id, drop)
        return user.get("cart", [])

    def cart_lines(self, user_id: str) -> List[Dict[str, Any]]:
        """Raw cart lines as order line items: ``[{product_id, quantity}]``."""
        user = self.store.find_by_id("user", user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return [{"product_id": item["product"], "quantity": item["quantity"]} for item in user.get("cart", [])]

    def list_cart(self, user_id: str) -> Dict[str, Any]:
        user = self.store.find_by_id("user", user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        # enrich with product info
        items = []
        for item in user.get("cart", []):
            product = self.store.find_by_id("product", item["product"])
            if product is None:
                logger.info("cart_item_skipped", user_id=user_id, product_id=item["product"], reason="product missing")
                continue
            items.append({
                "product": product,
                "quantity": item["quantity"],
                "subtotal": compute_total([(product["price"], item["quantity"])]),
            })
        total = compute_total((i["product"]["price"], i["quantity"]) for i in items)
        return {"items": items, "total": total}
