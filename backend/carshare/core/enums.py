# backend/carshare/core/enums.py
"""
Core enums for the booking engine.

These enums give the lifecycle guards and pricing rules closed value sets
instead of string literals scattered across call sites.
"""

from enum import Enum


class ActorRole(str, Enum):
    """
    Role an actor plays for a specific booking.

    Roles are relative to the booking: the same user is a renter on one
    booking and an owner on another.
    """

    RENTER = "renter"
    OWNER = "owner"
    SUPPORT = "support"
    SYSTEM = "system"


class InsuranceTier(str, Enum):
    """Insurance options offered at request time, charged per rental day."""

    BASIC = "basic"
    STANDARD = "standard"
    PREMIUM = "premium"


class VehicleStatus(str, Enum):
    AVAILABLE = "available"
    RENTED = "rented"
    MAINTENANCE = "maintenance"
