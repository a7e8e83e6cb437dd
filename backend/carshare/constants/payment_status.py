"""Shared payment status mapping helpers."""

from __future__ import annotations

from typing import Optional

from ..models.booking import PaymentStatus
from ..models.payment import HoldState

# None means the intent is still moving (3DS, processing) and the outcome is unknown.
STRIPE_TO_HOLD_STATE = {
    "requires_capture": HoldState.HELD,
    "succeeded": HoldState.CAPTURED,
    "canceled": HoldState.RELEASED,
    "cancelled": HoldState.RELEASED,
    "requires_payment_method": HoldState.FAILED,
    "requires_confirmation": None,
    "requires_action": None,
    "processing": None,
}

HOLD_STATE_TO_PAYMENT_STATUS = {
    HoldState.HELD: PaymentStatus.PREAUTHORIZED,
    HoldState.CAPTURED: PaymentStatus.CHARGED,
    HoldState.RELEASED: PaymentStatus.REFUNDED,
    HoldState.PARTIALLY_REFUNDED: PaymentStatus.PARTIAL_REFUND,
    HoldState.REFUNDED: PaymentStatus.REFUNDED,
    HoldState.FAILED: PaymentStatus.FAILED,
}


def map_hold_state(stripe_status: Optional[str]) -> Optional[HoldState]:
    """Map a Stripe PaymentIntent status to the engine's hold state."""
    if not stripe_status:
        return None
    return STRIPE_TO_HOLD_STATE.get(stripe_status)


def map_payment_status(state: HoldState) -> PaymentStatus:
    """Booking-level payment status for a hold state."""
    return HOLD_STATE_TO_PAYMENT_STATUS[state]
