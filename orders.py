"""
Order Engine.

Turns line-item requests (or a user's cart) into priced orders and moves
orders through their status lifecycle:

    AwaitingPayment -> Paid -> Shipped -> Completed
    AwaitingPayment | Paid -> Cancelled

Prices and the shipping address are copied into the order when it is
created; later product or address edits never reach existing orders.

Creating or deleting an order touches two documents (the order and its
owner's ``orders`` list) with no transaction around them. The order document
is always written first. If the owner update then fails the error is logged
and raised as ``PartialSuccessError`` naming both ids, and
``reconcile.ConsistencyAuditor`` can repair the user later.
"""

import math
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pymongo import DESCENDING

from addresses import AddressRegistry
from carts import CartManager, check_quantity
from config import Settings
from database import EntityStore, mutate_document, to_millis, utcnow
from errors import (
    ConflictError,
    ForbiddenError,
    IllegalTransitionError,
    InvalidArgumentError,
    InvalidStatusError,
    NoValidItemsError,
    NotFoundError,
    PartialSuccessError,
    StoreError,
)
from logging_config import get_logger
from pricing import compute_total
from schemas import Order, OrderItem, OrderStatus

logger = get_logger("orders")

# State machine transition map
TRANSITIONS = {
    OrderStatus.AWAITING_PAYMENT: {OrderStatus.PAID, OrderStatus.CANCELLED},
    OrderStatus.PAID: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.COMPLETED},
    OrderStatus.COMPLETED: set(),  # Terminal
    OrderStatus.CANCELLED: set(),  # Terminal
}

_LINK_FAILURES = (StoreError, ConflictError, NotFoundError)


def parse_status(label: Any) -> OrderStatus:
    try:
        return OrderStatus(label)
    except ValueError:
        raise InvalidStatusError(str(label)) from None


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS.get(current, set())


class OrderEngine:
    def __init__(self, store: EntityStore, addresses: AddressRegistry, carts: CartManager, settings: Settings):
        self.store = store
        self.addresses = addresses
        self.carts = carts
        self.settings = settings

    def _mutate(self, collection, entity_id, mutate):
        return mutate_document(self.store, collection, entity_id, mutate, attempts=self.settings.max_update_retries)

    # -------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------
    def resolve_line_items(self, line_items: Iterable[Dict[str, Any]]) -> Tuple[List[OrderItem], List[Dict[str, Any]]]:
        """Snapshot each requested line against its live product.

        Returns the resolved items and the requests that were dropped, each
        with the reason.
        """
        items: List[OrderItem] = []
        dropped: List[Dict[str, Any]] = []
        for requested in line_items:
            product_id = requested.get("product_id")
            quantity = requested.get("quantity")
            try:
                check_quantity(quantity)
            except InvalidArgumentError:
                dropped.append({"product_id": product_id, "quantity": quantity, "reason": "invalid quantity"})
                continue
            product = self.store.find_by_id("product", product_id) if product_id else None
            if product is None:
                dropped.append({"product_id": product_id, "quantity": quantity, "reason": "product not found"})
                continue
            items.append(OrderItem(
                product=product["id"],
                name=product.get("name", ""),
                price=product["price"],
                quantity=quantity,
            ))
        return items, dropped

    def _resolve_address(self, user: Dict[str, Any], address_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if address_id:
            address = self.addresses.get_address(address_id)
            if address["user"] != user["id"]:
                raise ForbiddenError("Address does not belong to user")
            return address

        default_id = user.get("default_address")
        if default_id:
            address = self.addresses.find_address(default_id)
            if address is not None:
                return address
            logger.warning("default_address_missing", user_id=user["id"], address_id=default_id)

        if self.settings.require_shipping_address:
            raise InvalidArgumentError("No shipping address supplied and user has no default address")
        logger.warning("order_without_address", user_id=user["id"])
        return None

    def create_order(
        self,
        user_id: str,
        line_items: Iterable[Dict[str, Any]],
        address_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Price and persist an order, then link it to its user.

        Line items whose product cannot be resolved are dropped; the request
        only fails when none survive.
        """
        user = self.store.find_by_id("user", user_id)
        if user is None:
            raise NotFoundError("User", user_id)

        items, dropped = self.resolve_line_items(line_items)
        if dropped:
            logger.warning("order_items_dropped", user_id=user_id, dropped=dropped)
        if not items:
            raise NoValidItemsError()

        address = self._resolve_address(user, address_id)
        order = self.store.create("order", Order(
            user=user["id"],
            address=address["id"] if address else None,
            shipping_detail=address["detail"] if address else None,
            products=items,
            price=compute_total((i.price, i.quantity) for i in items),
            status=OrderStatus.AWAITING_PAYMENT,
        ))
        logger.info("order_created", order_id=order["id"], user_id=user_id, price=order["price"], items=len(items))

        def link(owner):
            orders = owner.get("orders", [])
            if order["id"] in orders:
                return None
            orders.append(order["id"])
            return {"orders": orders}

        try:
            self._mutate("user", user_id, link)
        except _LINK_FAILURES as e:
            logger.error("order_link_failed", order_id=order["id"], user_id=user_id, error=str(e))
            raise PartialSuccessError(
                "Order created but not linked to user",
                {"order_id": order["id"], "user_id": user_id},
                cause=e,
            ) from e
        return order

    def checkout(self, user_id: str, address_id: Optional[str] = None) -> Dict[str, Any]:
        """Create an order from the user's cart and drop the ordered lines."""
        lines = self.carts.cart_lines(user_id)
        if not lines:
            raise NoValidItemsError("Cart is empty")
        order = self.create_order(user_id, lines, address_id)

        # clear cart
        ordered = {item["product"] for item in order["products"]}
        try:
            self.carts.clear_lines(user_id, ordered)
        except _LINK_FAILURES as e:
            logger.error("cart_clear_failed", order_id=order["id"], user_id=user_id, error=str(e))
            raise PartialSuccessError(
                "Order created but cart was not cleared",
                {"order_id": order["id"], "user_id": user_id},
                cause=e,
            ) from e
        return order

    # -------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------
    def get_order(self, order_id: str) -> Dict[str, Any]:
        order = self.store.find_by_id("order", order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    def get_order_products(self, order_id: str) -> List[Dict[str, Any]]:
        """Order lines with the live product attached when it still exists."""
        order = self.get_order(order_id)
        return [
            {**line, "current": self.store.find_by_id("product", line["product"])}
            for line in order.get("products", [])
        ]

    def list_orders(
        self,
        user: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        page_size: Optional[int] = None,
        as_of: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Newest first, paginated.

        Results are limited to orders created at or before ``as_of`` (now by
        default, echoed back), so passing it again keeps pages fixed while
        new orders arrive.
        """
        page_size = page_size or self.settings.default_page_size
        if page < 1:
            raise InvalidArgumentError("page must be >= 1")
        if not 1 <= page_size <= self.settings.max_page_size:
            raise InvalidArgumentError(f"page_size must be between 1 and {self.settings.max_page_size}")
        if as_of is None:
            as_of = utcnow()
        elif as_of.tzinfo is None:
            as_of = as_of.replace(tzinfo=timezone.utc)
        as_of = to_millis(as_of)

        query: Dict[str, Any] = {"created_at": {"$lte": as_of}}
        if user:
            query["user"] = user
        if status:
            query["status"] = parse_status(status).value

        total = self.store.count_documents("order", query)
        orders = self.store.find(
            "order",
            query,
            sort=[("created_at", DESCENDING), ("_id", DESCENDING)],
            skip=(page - 1) * page_size,
            limit=page_size,
        )
        return {
            "total": total,
            "pages": math.ceil(total / page_size),
            "page": page,
            "page_size": page_size,
            "as_of": as_of,
            "orders": orders,
        }

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    def update_status(self, order_id: str, new_status: Any) -> Dict[str, Any]:
        target = parse_status(new_status)

        def advance(order):
            current = order.get("status")
            if self.settings.enforce_status_graph:
                try:
                    allowed = can_transition(OrderStatus(current), target)
                except ValueError:
                    allowed = False
                if not allowed:
                    raise IllegalTransitionError(str(current), target.value)
            return {"status": target.value}

        order = self._mutate("order", order_id, advance)
        logger.info("order_status_changed", order_id=order_id, status=target.value)
        return order

    def cancel_order(self, user_id: str, order_id: str) -> Dict[str, Any]:
        order = self.get_order(order_id)
        if order["user"] != user_id:
            raise ForbiddenError("Order does not belong to user")
        return self.update_status(order_id, OrderStatus.CANCELLED)

    def delete_order(self, user_id: str, order_id: str) -> None:
        """Delete the order, then drop it from its owner's order list."""
        if self.store.find_by_id("user", user_id) is None:
            raise NotFoundError("User", user_id)
        order = self.get_order(order_id)
        if order["user"] != user_id:
            raise ForbiddenError("Order does not belong to user")

        self.store.delete_by_id("order", order["id"])
        logger.info("order_deleted", order_id=order["id"], user_id=user_id)

        def unlink(owner):
            orders = owner.get("orders", [])
            if order["id"] not in orders:
                return None
            return {"orders": [o for o in orders if o != order["id"]]}

        try:
            self._mutate("user", user_id, unlink)
        except _LINK_FAILURES as e:
            logger.error("order_unlink_failed", order_id=order["id"], user_id=user_id, error=str(e))
            raise PartialSuccessError(
                "Order deleted but still referenced by user",
                {"order_id": order["id"], "user_id": user_id},
                cause=e,
            ) from e
