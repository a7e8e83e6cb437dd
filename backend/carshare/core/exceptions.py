# backend/carshare/core/exceptions.py
"""
Domain-specific exceptions for the booking engine.

These exceptions provide clear, business-focused error messages
that can be caught and handled appropriately at the API layer.
Every exception carries a stable ``code`` and a ``retryable`` flag so a
client can decide between "try again" and "choose different dates or
payment method".
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable: bool = False

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

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
                "retryable": self.retryable,
            },
        )


class ValidationException(DomainException):
    """Raised when request validation fails before any side effect."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenException(DomainException):
    """Raised when an actor lacks permission for an action."""

    status_code = status.HTTP_403_FORBIDDEN


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""

    status_code = HTTP_422_UNPROCESSABLE


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


# Availability


class VehicleUnavailableException(ConflictException):
    """Raised when the requested dates overlap an active booking."""

    def __init__(
        self,
        vehicle_id: str,
        *,
        alternatives: Optional[list[dict[str, str]]] = None,
        conflicting_booking_ids: Optional[list[str]] = None,
    ):
        super().__init__(
            message="Vehicle is not available for the selected dates, try alternative dates",
            code="VEHICLE_UNAVAILABLE",
            details={
                "vehicle_id": vehicle_id,
                "alternatives": alternatives or [],
                "conflicting_booking_ids": conflicting_booking_ids or [],
            },
        )


class BookingConflictException(ConflictException):
    """Raised by a repository when an insert would overlap an active booking."""

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message or "These dates conflict with an existing booking",
            code="BOOKING_CONFLICT",
            details=details or {},
        )


# Lifecycle


class InvalidTransitionException(BusinessRuleException):
    """Raised when an edge is not in the transition table or a guard is unmet."""

    def __init__(
        self,
        message: str,
        *,
        current_status: Optional[str] = None,
        target_status: Optional[str] = None,
        actor_role: Optional[str] = None,
    ):
        super().__init__(
            message=message,
            code="INVALID_TRANSITION",
            details={
                "current_status": current_status,
                "target_status": target_status,
                "actor_role": actor_role,
            },
        )


class StaleStateException(ConflictException):
    """Raised when the persisted status no longer matches the expected one."""

    retryable = True

    def __init__(self, booking_id: str, expected_status: str, actual_status: Optional[str] = None):
        super().__init__(
            message="Booking was modified concurrently, reload it and try again",
            code="STALE_STATE",
            details={
                "booking_id": booking_id,
                "expected_status": expected_status,
                "actual_status": actual_status,
            },
        )


# Payments


class PaymentException(DomainException):
    """Base class for payment protocol failures."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        payment_reference: Optional[str] = None,
        reason: Optional[str] = None,
    ):
        super().__init__(
            message=message,
            code=code,
            details={"payment_reference": payment_reference, "reason": reason},
        )
        self.payment_reference = payment_reference
        self.reason = reason


class PaymentDeclinedException(PaymentException):
    """Raised when a hold cannot be placed; no booking is created."""

    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, reason: Optional[str] = None, *, payment_reference: Optional[str] = None):
        super().__init__(
            "Payment authorization was declined, try another payment method",
            code="PAYMENT_DECLINED",
            payment_reference=payment_reference,
            reason=reason,
        )


class CaptureFailedException(PaymentException):
    """Raised when a hold could not be converted into a charge."""

    def __init__(self, reason: Optional[str] = None, *, payment_reference: Optional[str] = None):
        super().__init__(
            "Payment capture failed",
            code="CAPTURE_FAILED",
            payment_reference=payment_reference,
            reason=reason,
        )


class CaptureStatusUnknownException(PaymentException):
    """Raised when a capture timed out and a status poll could not confirm it."""

    retryable = True

    def __init__(self, *, payment_reference: Optional[str] = None):
        super().__init__(
            "Payment capture outcome is not known yet, try again shortly",
            code="CAPTURE_STATUS_UNKNOWN",
            payment_reference=payment_reference,
            reason="timeout",
        )


class ReleaseFailedException(PaymentException):
    """Raised when a hold could not be released."""

    retryable = True

    def __init__(self, reason: Optional[str] = None, *, payment_reference: Optional[str] = None):
        super().__init__(
            "Payment hold release failed",
            code="RELEASE_FAILED",
            payment_reference=payment_reference,
            reason=reason,
        )


class RefundFailedException(PaymentException):
    """Raised when a captured charge could not be refunded."""

    retryable = True

    def __init__(self, reason: Optional[str] = None, *, payment_reference: Optional[str] = None):
        super().__init__(
            "Payment refund failed",
            code="REFUND_FAILED",
            payment_reference=payment_reference,
            reason=reason,
        )


class PaymentStateException(PaymentException):
    """Raised when a terminal payment operation is attempted on a spent handle."""

    status_code = status.HTTP_409_CONFLICT

    def __init__(self, operation: str, state: str, *, payment_reference: Optional[str] = None):
        super().__init__(
            f"Cannot {operation} a payment in state '{state}'",
            code="PAYMENT_INVALID_STATE",
            payment_reference=payment_reference,
            reason=state,
        )


# Persistence


class PersistenceException(ServiceException):
    """Raised when the booking store rejects a write for a non-business reason."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True

    def __init__(self, message: str = "Booking could not be saved", *, operation: Optional[str] = None):
        super().__init__(message=message, code="PERSISTENCE_ERROR", details={"operation": operation})


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations.
    """
