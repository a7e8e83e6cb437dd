"""Domain entities and persistence records for the booking engine."""

from .booking import (
    BLOCKING_STATUSES,
    PAYMENT_COMPATIBILITY,
    TERMINAL_STATUSES,
    Booking,
    BookingStatus,
    DamageItem,
    DamageSeverity,
    PaymentStatus,
    VehicleChecklist,
    is_payment_compatible,
)
from .payment import DiscrepancyOperation, HoldState, PaymentDiscrepancy, PaymentHandle
from .vehicle import DepositPolicy, Vehicle

__all__ = [
    "BLOCKING_STATUSES",
    "PAYMENT_COMPATIBILITY",
    "TERMINAL_STATUSES",
    "Booking",
    "BookingStatus",
    "DamageItem",
    "DamageSeverity",
    "DepositPolicy",
    "DiscrepancyOperation",
    "HoldState",
    "PaymentDiscrepancy",
    "PaymentHandle",
    "PaymentStatus",
    "Vehicle",
    "VehicleChecklist",
    "is_payment_compatible",
]
