# backend/carshare/models/booking.py
"""
Booking entity for the rental marketplace.

A booking is created in ``pending`` by a renter's request once availability
and a payment hold are secured, and from then on only changes through the
transition table in ``services.booking_lifecycle``. Bookings are never
deleted: cancelled, rejected, expired and completed rentals stay as history.

Entities are immutable; every change produces a new instance through
``model_copy(update=...)`` and is persisted with an optimistic status check.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..core.enums import ActorRole, InsuranceTier


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    PENDING = "pending"  # Requested by renter, hold placed
    ACCEPTED = "accepted"  # Owner accepted, waiting for renter payment
    CONFIRMED = "confirmed"  # Hold captured
    IN_PROGRESS = "in_progress"  # Vehicle picked up
    COMPLETED = "completed"  # Vehicle returned
    CANCELLED = "cancelled"  # Withdrawn by renter
    REJECTED = "rejected"  # Declined by owner
    DISPUTED = "disputed"  # Frozen pending human resolution
    EXPIRED = "expired"  # No response within the allowed window


class PaymentStatus(str, Enum):
    PREAUTHORIZED = "preauthorized"
    CHARGED = "charged"
    REFUNDED = "refunded"
    PARTIAL_REFUND = "partial_refund"
    FAILED = "failed"


TERMINAL_STATUSES: FrozenSet[BookingStatus] = frozenset(
    {
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
        BookingStatus.REJECTED,
        BookingStatus.EXPIRED,
        BookingStatus.DISPUTED,
    }
)

# Statuses whose bookings occupy their dates on the vehicle calendar.
BLOCKING_STATUSES: FrozenSet[BookingStatus] = frozenset(
    {
        BookingStatus.PENDING,
        BookingStatus.ACCEPTED,
        BookingStatus.CONFIRMED,
        BookingStatus.IN_PROGRESS,
        BookingStatus.DISPUTED,
    }
)

_SETTLED = frozenset({PaymentStatus.CHARGED, PaymentStatus.PARTIAL_REFUND, PaymentStatus.REFUNDED})
_CLOSED_UNPAID = frozenset(
    {PaymentStatus.REFUNDED, PaymentStatus.PREAUTHORIZED, PaymentStatus.FAILED}
)

PAYMENT_COMPATIBILITY: Dict[BookingStatus, FrozenSet[PaymentStatus]] = {
    BookingStatus.PENDING: frozenset({PaymentStatus.PREAUTHORIZED}),
    BookingStatus.ACCEPTED: frozenset({PaymentStatus.PREAUTHORIZED, PaymentStatus.FAILED}),
    BookingStatus.CONFIRMED: frozenset({PaymentStatus.CHARGED}),
    BookingStatus.IN_PROGRESS: frozenset({PaymentStatus.CHARGED}),
    BookingStatus.COMPLETED: _SETTLED,
    BookingStatus.DISPUTED: _SETTLED,
    # preauthorized here means the release failed and is queued for reconciliation
    BookingStatus.CANCELLED: _CLOSED_UNPAID,
    BookingStatus.REJECTED: _CLOSED_UNPAID,
    BookingStatus.EXPIRED: _CLOSED_UNPAID,
}


def is_payment_compatible(status: BookingStatus, payment_status: PaymentStatus) -> bool:
    return payment_status in PAYMENT_COMPATIBILITY[status]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DamageSeverity(str, Enum):
    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"


class DamageItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    location: str = Field(..., min_length=1, description="e.g. front left door")
    description: str = Field(..., min_length=1)
    severity: DamageSeverity
    photo_urls: List[str] = Field(default_factory=list)


class VehicleChecklist(BaseModel):
    """Condition report captured at pickup and at return."""

    model_config = ConfigDict(frozen=True)

    fuel_level: int = Field(..., ge=0, le=100, description="Fuel level in percent")
    odometer_reading: int = Field(..., ge=0, description="Odometer in km")
    exterior: Dict[str, bool] = Field(default_factory=dict)
    interior: Dict[str, bool] = Field(default_factory=dict)
    mechanical: Dict[str, bool] = Field(default_factory=dict)
    accessories: Dict[str, bool] = Field(default_factory=dict)
    documents: Dict[str, bool] = Field(default_factory=dict)
    damages: List[DamageItem] = Field(default_factory=list)
    missing: List[str] = Field(default_factory=list)
    cleanliness_rating: int = Field(default=5, ge=1, le=5)
    comments: str = ""


class Booking(BaseModel):
    """
    Self-contained rental booking between a renter and a vehicle owner.

    Prices are snapshotted at request time in whole currency units.
    ``total_amount`` never changes after creation; refunds are tracked in
    ``refunded_amount`` and ``payment_status``.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    id: str
    vehicle_id: str
    renter_id: str
    owner_id: str

    start_date: date
    end_date: date
    duration_days: int = Field(..., ge=1)
    pickup_location: str
    return_location: str
    insurance_tier: InsuranceTier = InsuranceTier.BASIC

    daily_rate: int = Field(..., ge=0)
    base_price: int = Field(..., ge=0)
    insurance_fee: int = Field(..., ge=0)
    service_fee: int = Field(..., ge=0)
    total_amount: int = Field(..., ge=0)
    deposit_amount: int = Field(..., ge=0)

    status: BookingStatus = BookingStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PREAUTHORIZED
    payment_reference: Optional[str] = None
    captured_amount: int = 0
    refunded_amount: int = 0

    contact_shared: bool = False
    owner_ready_for_pickup: bool = False
    renter_ready_for_pickup: bool = False

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

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_dates(self) -> "Booking":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def ready_for_pickup(self) -> bool:
        return self.owner_ready_for_pickup and self.renter_ready_for_pickup

    def overlaps(self, start: date, end: date) -> bool:
        """Closed-interval overlap at day granularity; both end dates inclusive."""
        return self.start_date <= end and self.end_date >= start

    def role_of(self, user_id: str) -> Optional[ActorRole]:
        if user_id == self.renter_id:
            return ActorRole.RENTER
        if user_id == self.owner_id:
            return ActorRole.OWNER
        return None
