"""
Domain exceptions for the payment engine.

Each exception carries a stable ``code`` and an HTTP status so the API layer
can render it without knowing the business rule that raised it.
"""

from typing import Any, Dict, Optional

from fastapi import status


class PaymentError(Exception):
    """Base exception for all domain errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "error",
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(PaymentError):
    """Bad input, rejected before any state change."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFound(PaymentError):
    status_code = status.HTTP_404_NOT_FOUND


class Forbidden(PaymentError):
    status_code = status.HTTP_403_FORBIDDEN


class InvalidTransition(PaymentError):
    """A state machine refused the requested move."""

    status_code = status.HTTP_409_CONFLICT


class DuplicateIdempotencyKey(PaymentError):
    """An active or succeeded payment already exists for this checkout."""

    status_code = status.HTTP_409_CONFLICT

    def __init__(self, payment_id: str, payment_status: str) -> None:
        super().__init__(
            "A payment for this checkout already exists",
            details={"payment_id": payment_id, "payment_status": payment_status},
        )
        self.payment_id = payment_id
        self.payment_status = payment_status


class GatewayError(PaymentError):
    """Base for failures talking to a payment provider."""

    status_code = status.HTTP_502_BAD_GATEWAY


class GatewayUnavailable(GatewayError):
    """Transient network/5xx failure where the provider did not execute the call."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class RetryExhausted(GatewayUnavailable):
    """The retry budget for a provider call was used up."""


class GatewayAmbiguous(GatewayError):
    """Execution state unknown (e.g. timeout after send). Never retried automatically."""

    status_code = status.HTTP_502_BAD_GATEWAY


class GatewayRejected(GatewayError):
    """The provider refused the request unambiguously (declined, invalid request)."""

    status_code = status.HTTP_402_PAYMENT_REQUIRED


class SignatureInvalid(PaymentError):
    """Webhook authenticity check failed. Audited, never surfaced to the caller."""

    status_code = status.HTTP_200_OK


class WithdrawalError(PaymentError):
    status_code = 422


class InsufficientBalance(WithdrawalError):
    pass


class BelowMinimum(WithdrawalError):
    pass


class AboveMaximum(WithdrawalError):
    pass


class BalanceChanged(WithdrawalError):
    """Balance shrank between submission and approval; the request was auto-rejected."""
