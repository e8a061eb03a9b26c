"""
Error types for the commerce backend.

Every error carries the HTTP status the API layer answers with, so handlers
never need to know which concrete class they caught.
"""

from typing import Any, Dict, Optional


class CommerceError(Exception):
    """Base exception for all commerce errors."""

    status_code = 500

    def __init__(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.message = message
        self.data = data or {}
        super().__init__(message)


class NotFoundError(CommerceError):
    """Raised when a referenced user, product, address or order is absent."""

    status_code = 404

    def __init__(self, kind: str, entity_id: Optional[str] = None, message: Optional[str] = None):
        self.kind = kind
        self.entity_id = entity_id
        if message is None:
            message = f"{kind} not found" if entity_id is None else f"{kind} not found: {entity_id}"
        super().__init__(message)


class InvalidArgumentError(CommerceError):
    """Raised when caller input is malformed (bad quantity, bad id, ...)."""

    status_code = 400


class InvalidStatusError(InvalidArgumentError):
    """Raised when a status label is not a member of the order status enumeration."""

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Invalid order status: {status}")


class UnauthenticatedError(CommerceError):
    status_code = 401


class ForbiddenError(CommerceError):
    """Raised on cross-ownership violations."""

    status_code = 403


class ConflictError(CommerceError):
    status_code = 409


class DuplicateError(ConflictError):
    """Raised when a unique field (username, category name) is already taken."""


class ConcurrentUpdateError(ConflictError):
    """Raised when a versioned write loses against a concurrent writer."""

    def __init__(self, collection: str, entity_id: str, expected_version: int):
        self.collection = collection
        self.entity_id = entity_id
        self.expected_version = expected_version
        super().__init__(
            f"Concurrent update on {collection}/{entity_id} (expected version {expected_version})"
        )


class IllegalTransitionError(ConflictError):
    """Raised when an order status change is not an edge of the lifecycle graph."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot transition order from {current} to {target}")


class NoValidItemsError(CommerceError):
    """Raised when none of the requested line items resolve to a product."""

    status_code = 422

    def __init__(self, message: str = "No valid items in order request"):
        super().__init__(message)


class StoreError(CommerceError):
    """Raised when the underlying document store fails."""

    status_code = 500


class PartialSuccessError(CommerceError):
    """Raised when a multi-document write stopped after its first step.

    ``data`` names the documents that were written so callers (and the
    consistency auditor) can locate the inconsistency.
    """

    status_code = 500

    def __init__(self, message: str, data: Dict[str, Any], cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message, data)
