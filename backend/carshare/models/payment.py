# backend/carshare/models/payment.py
"""
Payment-side value objects.

``PaymentHandle`` is the engine's view of one gateway authorization. A
handle moves from ``held`` through exactly one terminal operation (capture
or release); a captured handle can then be refunded until the captured
amount is exhausted.

``PaymentDiscrepancy`` records a payment operation that failed after the
booking transition it belonged to had already committed, so it can be
retried out of band.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .booking import Booking, PaymentStatus, utcnow


class HoldState(str, Enum):
    HELD = "held"
    CAPTURED = "captured"
    RELEASED = "released"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"
    FAILED = "failed"


class PaymentHandle(BaseModel):
    model_config = ConfigDict(frozen=True)

    reference: str
    amount: int = Field(..., ge=0)
    state: HoldState = HoldState.HELD
    captured_amount: int = 0
    refunded_amount: int = 0

    @property
    def refundable_amount(self) -> int:
        return max(0, self.captured_amount - self.refunded_amount)

    @classmethod
    def from_booking(cls, booking: Booking) -> "PaymentHandle":
        if booking.payment_reference is None:
            state = HoldState.FAILED
        elif booking.payment_status == PaymentStatus.PREAUTHORIZED:
            state = HoldState.HELD
        elif booking.payment_status == PaymentStatus.CHARGED:
            state = HoldState.CAPTURED
        elif booking.payment_status == PaymentStatus.PARTIAL_REFUND:
            state = HoldState.PARTIALLY_REFUNDED
        elif booking.payment_status == PaymentStatus.REFUNDED:
            state = HoldState.REFUNDED if booking.captured_amount else HoldState.RELEASED
        else:
            state = HoldState.FAILED
        return cls(
            reference=booking.payment_reference or "",
            amount=booking.total_amount,
            state=state,
            captured_amount=booking.captured_amount,
            refunded_amount=booking.refunded_amount,
        )


class DiscrepancyOperation(str, Enum):
    RELEASE = "release"
    REFUND = "refund"


class PaymentDiscrepancy(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    booking_id: Optional[str]
    operation: DiscrepancyOperation
    payment_reference: str
    amount: Optional[int] = None
    reason: str
    attempts: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None
