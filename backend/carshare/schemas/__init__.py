"""Pydantic DTOs for the HTTP boundary."""

from .booking import (
    AvailabilityCheckRequest,
    AvailabilityCheckResponse,
    BookingConfirmRequest,
    BookingCreate,
    BookingListResponse,
    BookingReasonRequest,
    BookingResponse,
    ChecklistSubmission,
    DateWindowResponse,
    DisputeRequest,
    PriceQuoteRequest,
    PriceQuoteResponse,
    RefundRequest,
)

__all__ = [
    "AvailabilityCheckRequest",
    "AvailabilityCheckResponse",
    "BookingConfirmRequest",
    "BookingCreate",
    "BookingListResponse",
    "BookingReasonRequest",
    "BookingResponse",
    "ChecklistSubmission",
    "DateWindowResponse",
    "DisputeRequest",
    "PriceQuoteRequest",
    "PriceQuoteResponse",
    "RefundRequest",
]
