"""
Address Registry.

Owns the link between a user and its addresses. The user document holds the
ordered ``address`` id list and the ``default_address`` pointer; address
documents point back through ``user``. Invariant kept by every operation:
a user with addresses has a default that is one of them, a user without
addresses has none.

Writes are ordered so that a crash never leaves the user pointing at a
missing address: an address is created before the user links it, and
unlinked before it is deleted. Deletion first marks the record
``deleted``, so a record left behind by an interrupted delete is never
mistaken for one left behind by an interrupted add.
"""

from typing import Any, Dict, List, Optional

from database import EntityStore, mutate_document, parse_oid
from errors import ConflictError, ForbiddenError, InvalidArgumentError, NotFoundError, PartialSuccessError, StoreError
from logging_config import get_logger
from schemas import Address

logger = get_logger("addresses")

# Addresses whose removal has not started
LIVE = {"deleted": {"$ne": True}}


def resolve_default(owned: List[str], current: Optional[str]) -> Optional[str]:
    """Keep ``current`` if it is still owned, else promote the first owned address."""
    if current in owned:
        return current
    return owned[0] if owned else None


class AddressRegistry:
    def __init__(self, store: EntityStore, max_update_retries: int = 5, enforce_ownership: bool = True):
        self.store = store
        self.max_update_retries = max_update_retries
        self.enforce_ownership = enforce_ownership

    def _mutate_user(self, user_id, mutate):
        return mutate_document(self.store, "user", user_id, mutate, attempts=self.max_update_retries)

    def _require_user(self, user_id: str) -> Dict[str, Any]:
        user = self.store.find_by_id("user", user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    def find_address(self, address_id: str) -> Optional[Dict[str, Any]]:
        address = self.store.find_by_id("address", address_id)
        if address is None or address.get("deleted"):
            return None
        return address

    def _require_address(self, address_id: str) -> Dict[str, Any]:
        address = self.find_address(address_id)
        if address is None:
            raise NotFoundError("Address", address_id)
        return address

    def get_address(self, address_id: str) -> Dict[str, Any]:
        return self._require_address(address_id)

    def add_address(self, user_id: str, detail: str) -> Dict[str, Any]:
        """Create an address for the user; the first one becomes the default."""
        if not detail or not detail.strip():
            raise InvalidArgumentError("Address detail must not be empty")
        self._require_user(user_id)
        address = self.store.create("address", Address(user=user_id, detail=detail))

        def link(user):
            owned = user.get("address", [])
            owned.append(address["id"])
            default = user.get("default_address")
            if default not in owned:
                default = address["id"]
            return {"address": owned, "default_address": default}

        try:
            user = self._mutate_user(user_id, link)
        except (StoreError, ConflictError, NotFoundError) as e:
            logger.error("address_link_failed", user_id=user_id, address_id=address["id"], error=str(e))
            raise PartialSuccessError(
                "Address created but not linked to user",
                {"user_id": user_id, "address_id": address["id"]},
                cause=e,
            ) from e

        logger.info(
            "address_added",
            user_id=user_id,
            address_id=address["id"],
            is_default=user.get("default_address") == address["id"],
        )
        return address

    def update_address(self, user_id: str, address_id: str, detail: str) -> Dict[str, Any]:
        if not detail or not detail.strip():
            raise InvalidArgumentError("Address detail must not be empty")
        address = self._require_address(address_id)
        if address["user"] != user_id:
            raise ForbiddenError("Address does not belong to user")
        return self.store.update_by_id("address", address_id, {"detail": detail})

    def set_default_address(self, user_id: str, address_id: str) -> Dict[str, Any]:
        self._require_user(user_id)
        address = self._require_address(address_id)
        if self.enforce_ownership and address["user"] != user_id:
            raise ForbiddenError("Address does not belong to user")

        def point(user):
            if self.enforce_ownership and address["id"] not in user.get("address", []):
                raise ForbiddenError("Address does not belong to user")
            if user.get("default_address") == address["id"]:
                return None
            return {"default_address": address["id"]}

        user = self._mutate_user(user_id, point)
        logger.info("default_address_changed", user_id=user_id, address_id=address["id"])
        return user

    def delete_address(self, user_id: str, address_id: str) -> Dict[str, Any]:
        """Mark, unlink and delete an address, re-pointing the default if needed."""
        user = self._require_user(user_id)
        if address_id not in user.get("address", []):
            raise NotFoundError("Address", address_id)
        try:
            self.store.update_by_id("address", address_id, {"deleted": True})
        except NotFoundError:
            # Dangling reference; only the user document needs fixing
            logger.warning("address_record_missing", user_id=user_id, address_id=address_id)

        promoted = {}

        def unlink(user):
            owned = user.get("address", [])
            if address_id not in owned:
                raise NotFoundError("Address", address_id)
            owned = [a for a in owned if a != address_id]
            default = resolve_default(owned, user.get("default_address"))
            promoted["default"] = default
            return {"address": owned, "default_address": default}

        try:
            user = self._mutate_user(user_id, unlink)
        except (StoreError, ConflictError) as e:
            logger.error("address_unlink_failed", user_id=user_id, address_id=address_id, error=str(e))
            raise PartialSuccessError(
                "Address marked deleted but still linked to user",
                {"user_id": user_id, "address_id": address_id},
                cause=e,
            ) from e
        logger.info("address_unlinked", user_id=user_id, address_id=address_id, default_address=promoted["default"])

        try:
            self.store.delete_by_id("address", address_id)
        except StoreError as e:
            logger.error("address_delete_failed", user_id=user_id, address_id=address_id, error=str(e))
            raise PartialSuccessError(
                "Address unlinked from user but its record was not deleted",
                {"user_id": user_id, "address_id": address_id},
                cause=e,
            ) from e
        return user

    def list_addresses(self, user_id: str) -> Dict[str, Any]:
        user = self._require_user(user_id)
        owned = user.get("address", [])
        ids = [i for i in (parse_oid(a) for a in owned) if i is not None]
        found = {a["id"]: a for a in self.store.find("address", {"_id": {"$in": ids}, **LIVE})}
        addresses = [found[a] for a in owned if a in found]
        default = found.get(user.get("default_address"))
        return {"address": addresses, "default_address": default}
