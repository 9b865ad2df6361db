"""Errors raised by the order and messaging services.

Every error carries a machine readable ``reason`` and a human message. The
``category`` groups them the way callers react to them: fix the input
(validation), log in (unauthenticated), stop (forbidden), give up on the id
(not_found), change intent and resubmit (conflict), or retry later (internal).
"""

from __future__ import annotations

from typing import Optional


class MarketError(Exception):
    category = "internal"
    default_reason = "internal_error"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason or self.default_reason

    def to_dict(self) -> dict:
        return {"reason": self.reason, "message": self.message}


class ValidationError(MarketError):
    category = "validation"
    default_reason = "invalid_request"


class UnauthenticatedError(MarketError):
    category = "unauthenticated"
    default_reason = "unauthenticated"


class ForbiddenError(MarketError):
    category = "forbidden"
    default_reason = "forbidden"


class NotFoundError(MarketError):
    category = "not_found"
    default_reason = "not_found"


class ConflictError(MarketError):
    category = "conflict"
    default_reason = "conflict"


class InsufficientStockError(ConflictError):
    default_reason = "insufficient_stock"

    def __init__(self, product_id: str, quantity: Optional[int] = None):
        message = (
            f"Product with ID {product_id} is out of stock or requested quantity "
            f"is unavailable."
        )
        super().__init__(message)
        self.product_id = product_id
        self.quantity = quantity

    def to_dict(self) -> dict:
        return {**super().to_dict(), "productId": self.product_id}


class InvalidStatusForCancelError(ConflictError):
    default_reason = "invalid_status_for_cancel"

    def __init__(self, status: str):
        super().__init__(
            f"Order cannot be cancelled because it is already in {status} status"
        )
        self.status = status

    def to_dict(self) -> dict:
        return {**super().to_dict(), "status": self.status}


class InvalidStatusTransitionError(ConflictError):
    default_reason = "invalid_status_transition"

    def __init__(self, current: str, requested: str):
        super().__init__(
            f"Cannot change order status from {current} to {requested}"
        )
        self.current = current
        self.requested = requested

    def to_dict(self) -> dict:
        return {**super().to_dict(), "status": self.current, "requested": self.requested}


class InternalError(MarketError):
    category = "internal"
    default_reason = "internal_error"
