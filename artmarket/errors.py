"""
Order cancellation failures.

Raised by the cancellation workflow; the exception handler in ``main`` turns
each one into a ``{"success": false, "error", "code"}`` body with its status.
"""
from __future__ import annotations

from fastapi import status


class CancellationError(Exception):
    code = "internal"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(CancellationError):
    code = "unauthenticated"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Authentication required"


class InvalidArgument(CancellationError):
    code = "invalid_argument"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class NotFound(CancellationError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Order not found"


class Forbidden(CancellationError):
    code = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "You do not have permission to cancel this order"


class AlreadyCancelled(CancellationError):
    """Repeat cancellation of a cancelled order; same outcome every time."""
    code = "already_cancelled"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Order is already cancelled"


class InvalidState(CancellationError):
    code = "invalid_state"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Cannot cancel order that has been shipped or delivered"


class PaymentFailed(CancellationError):
    """Refund could not be created; the order was left untouched."""
    code = "payment_failed"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Refund failed. Order was not cancelled."


class Internal(CancellationError):
    pass
