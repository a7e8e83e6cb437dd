# backend/carshare/repositories/interfaces.py
"""
Repository interfaces consumed by the booking engine.

The engine never talks to a concrete store. Every data access goes through
these abstract classes so the lifecycle rules can be exercised against the
in-memory adapters in tests and against SQLAlchemy in deployments.

All methods are coroutines: implementations backed by blocking drivers run
their work in a worker thread.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, List, Mapping, Optional

from ..models.booking import Booking, BookingStatus
from ..models.payment import PaymentDiscrepancy
from ..models.vehicle import Vehicle


class BookingRepository(ABC):
    """Persistent store for bookings."""

    @abstractmethod
    async def find(self, booking_id: str) -> Optional[Booking]:
        """Return the booking or None."""

    @abstractmethod
    async def find_by_vehicle_and_status(
        self, vehicle_id: str, statuses: Iterable[BookingStatus]
    ) -> List[Booking]:
        """Return the vehicle's bookings whose status is in ``statuses``."""

    @abstractmethod
    async def insert(self, booking: Booking) -> Booking:
        """
        Persist a new booking.

        The overlap check against blocking bookings of the same vehicle must
        be evaluated atomically with the write.

        Raises:
            BookingConflictException: If the dates overlap a blocking booking
            RepositoryException: If the write fails for any other reason
        """

    @abstractmethod
    async def update_with_expected_status(
        self,
        booking_id: str,
        expected_status: BookingStatus,
        patch: Mapping[str, Any],
    ) -> Booking:
        """
        Apply ``patch`` only if the stored status still equals ``expected_status``.

        Raises:
            NotFoundException: If the booking does not exist
            StaleStateException: If the stored status differs
            RepositoryException: If the write fails for any other reason
        """

    @abstractmethod
    async def find_by_renter(
        self, renter_id: str, status: Optional[BookingStatus] = None
    ) -> List[Booking]:
        """Renter's bookings, newest first."""

    @abstractmethod
    async def find_by_owner(
        self, owner_id: str, status: Optional[BookingStatus] = None
    ) -> List[Booking]:
        """Owner's bookings, newest first."""

    @abstractmethod
    async def find_by_status_updated_before(
        self, status: BookingStatus, cutoff: datetime
    ) -> List[Booking]:
        """Bookings left in ``status`` since before ``cutoff`` (expiry sweep)."""


class VehicleRepository(ABC):
    """Read-only access to vehicle listings."""

    @abstractmethod
    async def get(self, vehicle_id: str) -> Optional[Vehicle]:
        """Return the vehicle or None."""


class ReconciliationQueue(ABC):
    """Payment operations awaiting an out-of-band retry."""

    @abstractmethod
    async def record(self, discrepancy: PaymentDiscrepancy) -> PaymentDiscrepancy:
        """Store a new discrepancy."""

    @abstractmethod
    async def pending(self, limit: int = 100) -> List[PaymentDiscrepancy]:
        """Unresolved discrepancies, oldest first."""

    @abstractmethod
    async def mark_attempted(self, discrepancy_id: str, reason: str) -> None:
        """Count a failed retry."""

    @abstractmethod
    async def mark_resolved(self, discrepancy_id: str) -> None:
        """Close a discrepancy after a successful retry."""
