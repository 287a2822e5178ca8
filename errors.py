"""
Error kinds raised by the storefront core.

Every error carries the HTTP status it maps to; ``main`` installs a single
handler that renders them as ``{"detail": ..., "errors": [...]}``.
"""

from typing import Any, Dict, List, Optional


class StorefrontError(Exception):
    status_code = 400

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationError(StorefrontError):
    """Malformed or out-of-range input. ``errors`` holds field-level detail."""

    status_code = 422

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(message, [{"field": field, "message": message}])


class NotFoundError(StorefrontError):
    status_code = 404


class InsufficientStockError(StorefrontError):
    status_code = 409

    def __init__(self, product_id: str, name: str, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for product: {name}",
            [{"field": "product_id", "product_id": product_id, "requested": requested, "available": available}],
        )
        self.product_id = product_id


class VariantRequiredError(StorefrontError):
    status_code = 422

    def __init__(self, product_id: str, name: str, variant: str):
        super().__init__(
            f"{variant.capitalize()} is required for product: {name}",
            [{"field": f"selected_{variant}", "product_id": product_id, "message": f"{variant} is required"}],
        )
        self.product_id = product_id
        self.variant = variant


class ConflictError(StorefrontError):
    """A concurrent write won the race (stock reservation, duplicate account)."""

    status_code = 409


class AuthenticationError(StorefrontError):
    status_code = 401


class AuthorizationError(StorefrontError):
    status_code = 403
