"""
Account Gateway: credentials in, verified identity out.

The signing key comes from the ``Settings`` handed to the constructor; the
rest of the service only ever sees an ``Identity``.
"""

from datetime import timedelta
from hashlib import sha256
from typing import Any, Dict, Optional

import jwt
from pydantic import BaseModel

from config import Settings
from database import utcnow
from errors import ForbiddenError, UnauthenticatedError
from logging_config import get_logger

logger = get_logger("auth")


class Identity(BaseModel):
    user_id: str
    username: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class AccountGateway:
    def __init__(self, settings: Settings):
        self._secret = settings.jwt_secret.get_secret_value()
        self._algorithm = settings.jwt_algorithm
        self._ttl = timedelta(minutes=settings.token_ttl_minutes)
        self._salt = settings.auth_salt

    # Simple salted sha256
    def hash_password(self, pw: str) -> str:
        return sha256((pw + self._salt).encode()).hexdigest()

    def check_password(self, pw: str, password_hash: str) -> bool:
        return self.hash_password(pw) == password_hash

    def issue_token(self, user: Dict[str, Any]) -> str:
        now = utcnow()
        claims = {
            "sub": user["id"],
            "username": user["username"],
            "role": user.get("role", "user"),
            "iat": now,
            "exp": now + self._ttl,
        }
        return jwt.encode(claims, self._secret, algorithm=self._algorithm)

    def verify(self, authorization: Optional[str]) -> Identity:
        """Verify an ``Authorization`` header value (``Bearer <token>``)."""
        if not authorization:
            raise UnauthenticatedError("Missing token")
        scheme, _, token = authorization.partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            raise UnauthenticatedError("Expected a Bearer token")
        try:
            claims = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError as e:
            raise UnauthenticatedError("Token expired") from e
        except jwt.InvalidTokenError as e:
            logger.info("token_rejected", error=str(e))
            raise ForbiddenError("Invalid token") from e
        return Identity(user_id=claims["sub"], username=claims["username"], role=claims.get("role", "user"))


def require_self_or_admin(identity: Identity, user_id: str) -> None:
    if identity.user_id != user_id and not identity.is_admin:
        raise ForbiddenError("Not allowed to act for another user")


def require_admin(identity: Identity) -> None:
    if not identity.is_admin:
        raise ForbiddenError("Admin role required")
