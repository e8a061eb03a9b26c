"""User registration, login and profile maintenance."""

import math
from typing import Any, Dict, Iterable, Optional

from auth import AccountGateway
from database import EntityStore, to_object_ids
from errors import DuplicateError, InvalidArgumentError, NotFoundError, UnauthenticatedError
from logging_config import get_logger
from schemas import User

logger = get_logger("accounts")

PROFILE_FIELDS = ("username", "nickname", "avatar", "gender", "email")


def public_user(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc = dict(doc)
    doc.pop("password_hash", None)
    return doc


class AccountService:
    def __init__(self, store: EntityStore, gateway: AccountGateway):
        self.store = store
        self.gateway = gateway

    def register(self, username: str, password: str, email: Optional[str] = None, nickname: Optional[str] = None) -> Dict[str, Any]:
        if not password:
            raise InvalidArgumentError("Password must not be empty")
        existing = self.store.find_one("user", {"username": username})
        if existing:
            raise DuplicateError("Username already exists")
        user = User(
            username=username,
            password_hash=self.gateway.hash_password(password),
            email=email,
            nickname=nickname or "user",
        )
        created = self.store.create("user", user)
        logger.info("user_registered", user_id=created["id"], username=username)
        return public_user(created)

    def login(self, username: str, password: str) -> Dict[str, Any]:
        user = self.store.find_one("user", {"username": username})
        if not user or not self.gateway.check_password(password, user.get("password_hash", "")):
            raise UnauthenticatedError("Invalid credentials")
        return {"user": public_user(user), "token": self.gateway.issue_token(user)}

    def get_user(self, user_id: str) -> Dict[str, Any]:
        user = self.store.find_by_id("user", user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return public_user(user)

    def update_profile(self, user_id: str, changes: Dict[str, Any], allow_role: bool = False) -> Dict[str, Any]:
        """Update profile fields; credentials and owned references are never touched here."""
        allowed = PROFILE_FIELDS + (("role",) if allow_role else ())
        updates = {k: v for k, v in changes.items() if k in allowed and v is not None}
        if not updates:
            return self.get_user(user_id)
        return public_user(self.store.update_by_id("user", user_id, updates))

    def update_password(self, user_id: str, old_password: str, new_password: str) -> None:
        user = self.store.find_by_id("user", user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        if not self.gateway.check_password(old_password, user.get("password_hash", "")):
            raise UnauthenticatedError("Invalid old password")
        if not new_password:
            raise InvalidArgumentError("Password must not be empty")
        self.store.update_by_id("user", user_id, {"password_hash": self.gateway.hash_password(new_password)})

    def list_users(self, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        if page < 1 or limit < 1:
            raise InvalidArgumentError("page and limit must be >= 1")
        total = self.store.count_documents("user")
        users = self.store.find("user", sort=[("created_at", 1), ("_id", 1)], skip=(page - 1) * limit, limit=limit)
        return {
            "page": page,
            "pages": math.ceil(total / limit),
            "total": total,
            "users": [public_user(u) for u in users],
        }

    def delete_users(self, ids: Iterable[str]) -> int:
        """Delete users along with the addresses and orders they own."""
        ids = list(ids)
        deleted = self.store.delete_many("user", {"_id": {"$in": to_object_ids(ids)}})
        addresses = self.store.delete_many("address", {"user": {"$in": ids}})
        orders = self.store.delete_many("order", {"user": {"$in": ids}})
        logger.info("users_deleted", users=deleted, addresses=addresses, orders=orders)
        return deleted
