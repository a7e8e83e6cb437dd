"""Event primitives for booking lifecycle streams."""

from .booking_events import (
    BookingEvent,
    BookingEventListener,
    BookingEvents,
    BookingPaymentAdjusted,
    BookingRequested,
    BookingTransitioned,
    NotificationAudience,
)

__all__ = [
    "BookingEvent",
    "BookingEventListener",
    "BookingEvents",
    "BookingPaymentAdjusted",
    "BookingRequested",
    "BookingTransitioned",
    "NotificationAudience",
]
