"""
Payment Error Taxonomy

Exceptions raised by the gateway clients and the checkout orchestrator.
Every exception carries a user-facing message that the API returns as-is.
"""

from typing import Any, Optional


class PaymentError(Exception):
    """Base class for checkout payment errors."""

    default_message = "Payment processing error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(PaymentError):
    """Payment details were rejected before any network call."""

    default_message = "Invalid payment details"


class GatewayError(PaymentError):
    """
    The provider answered with a non-success response, or could not be reached.

    Attributes:
        status_code: HTTP status returned by the provider (None on transport failure)
        payload: Decoded response body, when there was one
    """

    default_message = "Payment service error"

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        payload: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"[{self.status_code}] {self.message}"
        return self.message


class AuthorizationError(GatewayError):
    """The provider refused our credentials (HTTP 401 / Unauthorized)."""

    default_message = "Unauthorized"


class ConfirmationTimeoutError(PaymentError):
    """The payer did not confirm the charge before the deadline."""

    default_message = (
        "We did not receive the payment confirmation in time. "
        "Please check your balance."
    )


class InvalidTransitionError(PaymentError):
    """The requested action is not allowed in the session's current state."""

    default_message = "This action is not available right now"
