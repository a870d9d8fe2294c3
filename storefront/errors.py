"""Error kinds raised by the storefront core.

The core never picks HTTP status codes; ``storefront.main`` maps ``kind`` to a
response. Every error is recoverable and reportable to the caller.
"""
from typing import Optional


class StorefrontError(Exception):
    kind = "error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"kind": self.kind, **self.details}


class ValidationError(StorefrontError):
    kind = "validation"


class CapacityError(ValidationError):
    kind = "capacity"


class NotFoundError(StorefrontError):
    kind = "not_found"


class StockError(StorefrontError):
    kind = "stock"

    def __init__(self, message: str, product_id: str, available: int, requested: int, **details):
        super().__init__(message, product_id=product_id, available=available, requested=requested, **details)
        self.product_id = product_id
        self.available = available
        self.requested = requested


class ConflictError(StorefrontError):
    kind = "conflict"


class AuthorizationError(StorefrontError):
    kind = "authorization"


class InvalidTransitionError(StorefrontError):
    kind = "invalid_transition"

    def __init__(self, current: str, target: str, message: Optional[str] = None):
        super().__init__(
            message or f"Cannot change order status from '{current}' to '{target}'",
            current=current,
            target=target,
        )
        self.current = current
        self.target = target


def require_owner_or_admin(principal, owner_id: str, action: str = "access") -> None:
    """Raise AuthorizationError unless the principal owns the resource or is an admin."""
    if principal.is_admin:
        return
    if str(principal.id) != str(owner_id):
        raise AuthorizationError(f"Access denied. You can only {action} your own orders.")
