"""
Consistency audit for user-owned references.

Multi-document writes are not transactional, so a failure between steps can
leave a user and its orders or addresses disagreeing. The auditor compares
both directions of each link and can rewrite the user document to match the
documents that actually exist.

An address record marked ``deleted`` belongs to an interrupted delete: the
repair finishes that delete instead of linking the address back.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from addresses import LIVE, resolve_default
from database import EntityStore, mutate_document, parse_oid
from errors import NotFoundError
from logging_config import get_logger

logger = get_logger("reconcile")


class ConsistencyReport(BaseModel):
    user_id: str
    dangling_orders: List[str] = Field(default_factory=list, description="Listed on the user, no order document")
    orphan_orders: List[str] = Field(default_factory=list, description="Owned by the user, not listed")
    dangling_addresses: List[str] = Field(default_factory=list)
    orphan_addresses: List[str] = Field(default_factory=list)
    abandoned_addresses: List[str] = Field(default_factory=list, description="Marked deleted, record still present")
    invalid_default: bool = False

    @property
    def user_needs_repair(self) -> bool:
        return bool(
            self.dangling_orders
            or self.orphan_orders
            or self.dangling_addresses
            or self.orphan_addresses
            or self.invalid_default
        )

    @property
    def consistent(self) -> bool:
        return not (self.user_needs_repair or self.abandoned_addresses)


class ConsistencyAuditor:
    def __init__(self, store: EntityStore, max_update_retries: int = 5):
        self.store = store
        self.max_update_retries = max_update_retries

    def _existing_ids(self, collection: str, ids: List[str], query: Optional[Dict[str, Any]] = None) -> set:
        oids = [i for i in (parse_oid(x) for x in ids) if i is not None]
        return {d["id"] for d in self.store.find(collection, {"_id": {"$in": oids}, **(query or {})})}

    def _inspect(self, user: Dict[str, Any]) -> ConsistencyReport:
        user_id = user["id"]
        listed_orders = user.get("orders", [])
        listed_addresses = user.get("address", [])

        live_orders = self._existing_ids("order", listed_orders)
        owned_orders = self.store.find("order", {"user": user_id}, sort=[("created_at", 1)])
        live_addresses = self._existing_ids("address", listed_addresses, LIVE)
        owned_addresses = self.store.find("address", {"user": user_id}, sort=[("created_at", 1)])

        report = ConsistencyReport(
            user_id=user_id,
            dangling_orders=[o for o in listed_orders if o not in live_orders],
            orphan_orders=[o["id"] for o in owned_orders if o["id"] not in listed_orders],
            dangling_addresses=[a for a in listed_addresses if a not in live_addresses],
            orphan_addresses=[
                a["id"] for a in owned_addresses if not a.get("deleted") and a["id"] not in listed_addresses
            ],
            abandoned_addresses=[a["id"] for a in owned_addresses if a.get("deleted")],
        )
        kept = [a for a in listed_addresses if a in live_addresses]
        default = user.get("default_address")
        report.invalid_default = (default is None and bool(kept)) or (default is not None and default not in kept)
        return report

    def audit_user(self, user_id: str) -> ConsistencyReport:
        user = self.store.find_by_id("user", user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        report = self._inspect(user)
        if not report.consistent:
            logger.warning("user_inconsistent", **report.model_dump())
        return report

    def repair_user(self, user_id: str) -> ConsistencyReport:
        """Rewrite the user's reference lists from the documents that exist,
        then finish deleting abandoned address records.

        Returns the report of what was found before the repair.
        """
        found = {}

        def fix(user):
            report = self._inspect(user)
            found["report"] = report
            if not report.user_needs_repair:
                return None
            orders = [o for o in user.get("orders", []) if o not in report.dangling_orders]
            orders.extend(report.orphan_orders)
            addresses = [a for a in user.get("address", []) if a not in report.dangling_addresses]
            addresses.extend(report.orphan_addresses)
            return {
                "orders": orders,
                "address": addresses,
                "default_address": resolve_default(addresses, user.get("default_address")),
            }

        mutate_document(self.store, "user", user_id, fix, attempts=self.max_update_retries)
        report = found["report"]
        for address_id in report.abandoned_addresses:
            self.store.delete_by_id("address", address_id)
        if not report.consistent:
            logger.info("user_repaired", **report.model_dump())
        return report
