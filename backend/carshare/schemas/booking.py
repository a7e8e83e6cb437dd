# backend/carshare/schemas/booking.py
"""Request and response DTOs for the booking API."""

from datetime import date, datetime
from typing import List, Optional

from pydantic import Field, model_validator

from ..core.enums import InsuranceTier
from ..models.booking import Booking, BookingStatus, PaymentStatus, VehicleChecklist
from ..services.availability_checker import AvailabilityResult
from ..services.pricing_calculator import PriceQuote
from ._strict_base import StrictModel, StrictRequestModel


class DateRangeRequest(StrictRequestModel):
    vehicle_id: str = Field(..., min_length=1)
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def _end_not_before_start(self) -> "DateRangeRequest":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class AvailabilityCheckRequest(DateRangeRequest):
    pass


class DateWindowResponse(StrictModel):
    start_date: date
    end_date: date


class AvailabilityCheckResponse(StrictModel):
    vehicle_id: str
    is_available: bool
    conflicting_booking_ids: List[str] = Field(default_factory=list)
    alternatives: List[DateWindowResponse] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: AvailabilityResult) -> "AvailabilityCheckResponse":
        return cls(
            vehicle_id=result.vehicle_id,
            is_available=result.is_available,
            conflicting_booking_ids=list(result.conflicting_booking_ids),
            alternatives=[
                DateWindowResponse(start_date=window.start_date, end_date=window.end_date)
                for window in result.alternatives
            ],
        )


class PriceQuoteRequest(DateRangeRequest):
    insurance_tier: InsuranceTier = InsuranceTier.BASIC


class PriceQuoteResponse(StrictModel):
    duration_days: int
    daily_rate: int
    base_price: int
    insurance_tier: InsuranceTier
    insurance_fee: int
    service_fee: int
    total_amount: int
    deposit_amount: int

    @classmethod
    def from_quote(cls, quote: PriceQuote) -> "PriceQuoteResponse":
        return cls(**quote.to_dict())


class BookingCreate(DateRangeRequest):
    pickup_location: str = Field(..., min_length=1, max_length=500)
    return_location: str = Field(..., min_length=1, max_length=500)
    insurance_tier: InsuranceTier = InsuranceTier.BASIC
    payment_method: str = Field(..., min_length=1, description="Saved payment method id")
    renter_notes: Optional[str] = Field(default=None, max_length=1000)


class BookingReasonRequest(StrictRequestModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class BookingConfirmRequest(StrictRequestModel):
    payment_method: Optional[str] = Field(
        default=None, description="New payment method, required after a failed payment"
    )


class ChecklistSubmission(StrictRequestModel):
    checklist: VehicleChecklist
    photos: List[str] = Field(default_factory=list)


class DisputeRequest(StrictRequestModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class RefundRequest(StrictRequestModel):
    amount: Optional[int] = Field(default=None, ge=1, description="Defaults to the full refundable amount")
    reason: Optional[str] = Field(default=None, max_length=1000)


class BookingResponse(StrictModel):
    id: str
    vehicle_id: str
    renter_id: str
    owner_id: str
    start_date: date
    end_date: date
    duration_days: int
    pickup_location: str
    return_location: str
    insurance_tier: InsuranceTier

    daily_rate: int
    base_price: int
    insurance_fee: int
    service_fee: int
    total_amount: int
    deposit_amount: int

    status: BookingStatus
    payment_status: PaymentStatus
    captured_amount: int
    refunded_amount: int

    contact_shared: bool
    owner_ready_for_pickup: bool
    renter_ready_for_pickup: bool
    pickup_checklist: Optional[VehicleChecklist] = None
    pickup_photos: List[str] = Field(default_factory=list)
    pickup_recorded_at: Optional[datetime] = None
    return_checklist: Optional[VehicleChecklist] = None
    return_photos: List[str] = Field(default_factory=list)
    return_recorded_at: Optional[datetime] = None

    renter_notes: Optional[str] = None
    owner_notes: Optional[str] = None
    dispute_reason: Optional[str] = None
    cancelled_by: Optional[str] = None

    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingResponse":
        # payment_reference is a gateway id and stays server-side
        return cls(**booking.model_dump(exclude={"payment_reference"}))


class BookingListResponse(StrictModel):
    items: List[BookingResponse]
    total: int
