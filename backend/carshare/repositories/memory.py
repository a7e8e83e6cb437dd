# backend/carshare/repositories/memory.py
"""
In-memory repository adapters.

Used by the test suite and by local runs without a database. Writes are
serialized with an ``asyncio.Lock`` so the overlap re-check in ``insert``
and the status comparison in ``update_with_expected_status`` are atomic
with respect to other coroutines on the same event loop.
"""

import asyncio
from datetime import datetime
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..core.exceptions import BookingConflictException, NotFoundException, StaleStateException
from ..models.booking import BLOCKING_STATUSES, Booking, BookingStatus, utcnow
from ..models.payment import PaymentDiscrepancy
from ..models.vehicle import Vehicle
from .interfaces import BookingRepository, ReconciliationQueue, VehicleRepository

logger = logging.getLogger(__name__)


class InMemoryBookingRepository(BookingRepository):
    def __init__(self, bookings: Optional[Iterable[Booking]] = None) -> None:
        self._rows: Dict[str, Booking] = {}
        self._lock = asyncio.Lock()
        for booking in bookings or ():
            self._rows[booking.id] = booking

    async def find(self, booking_id: str) -> Optional[Booking]:
        return self._rows.get(booking_id)

    async def find_by_vehicle_and_status(
        self, vehicle_id: str, statuses: Iterable[BookingStatus]
    ) -> List[Booking]:
        wanted = set(statuses)
        return [
            row
            for row in self._rows.values()
            if row.vehicle_id == vehicle_id and row.status in wanted
        ]

    async def insert(self, booking: Booking) -> Booking:
        async with self._lock:
            if booking.id in self._rows:
                raise BookingConflictException(
                    f"Booking {booking.id} already exists", details={"booking_id": booking.id}
                )
            conflicts = [
                row.id
                for row in self._rows.values()
                if row.vehicle_id == booking.vehicle_id
                and row.status in BLOCKING_STATUSES
                and row.overlaps(booking.start_date, booking.end_date)
            ]
            if conflicts:
                raise BookingConflictException(
                    details={"vehicle_id": booking.vehicle_id, "conflicting_booking_ids": conflicts}
                )
            self._rows[booking.id] = booking
            return booking

    async def update_with_expected_status(
        self,
        booking_id: str,
        expected_status: BookingStatus,
        patch: Mapping[str, Any],
    ) -> Booking:
        async with self._lock:
            current = self._rows.get(booking_id)
            if current is None:
                raise NotFoundException(f"Booking {booking_id} not found", code="BOOKING_NOT_FOUND")
            if current.status != expected_status:
                raise StaleStateException(booking_id, expected_status.value, current.status.value)
            updated = current.model_copy(update={**patch, "updated_at": utcnow()})
            self._rows[booking_id] = updated
            return updated

    async def find_by_renter(
        self, renter_id: str, status: Optional[BookingStatus] = None
    ) -> List[Booking]:
        return self._newest_first(
            row
            for row in self._rows.values()
            if row.renter_id == renter_id and (status is None or row.status == status)
        )

    async def find_by_owner(
        self, owner_id: str, status: Optional[BookingStatus] = None
    ) -> List[Booking]:
        return self._newest_first(
            row
            for row in self._rows.values()
            if row.owner_id == owner_id and (status is None or row.status == status)
        )

    async def find_by_status_updated_before(
        self, status: BookingStatus, cutoff: datetime
    ) -> List[Booking]:
        return [
            row for row in self._rows.values() if row.status == status and row.updated_at < cutoff
        ]

    @staticmethod
    def _newest_first(rows: Iterable[Booking]) -> List[Booking]:
        return sorted(rows, key=lambda row: row.created_at, reverse=True)


class InMemoryVehicleRepository(VehicleRepository):
    def __init__(self, vehicles: Optional[Iterable[Vehicle]] = None) -> None:
        self._rows: Dict[str, Vehicle] = {vehicle.id: vehicle for vehicle in vehicles or ()}

    def add(self, vehicle: Vehicle) -> None:
        self._rows[vehicle.id] = vehicle

    async def get(self, vehicle_id: str) -> Optional[Vehicle]:
        return self._rows.get(vehicle_id)


class InMemoryReconciliationQueue(ReconciliationQueue):
    def __init__(self) -> None:
        self._rows: Dict[str, PaymentDiscrepancy] = {}

    async def record(self, discrepancy: PaymentDiscrepancy) -> PaymentDiscrepancy:
        self._rows[discrepancy.id] = discrepancy
        logger.warning(
            "payment_discrepancy_recorded",
            extra={
                "discrepancy_id": discrepancy.id,
                "booking_id": discrepancy.booking_id,
                "operation": discrepancy.operation.value,
                "reason": discrepancy.reason,
            },
        )
        return discrepancy

    async def pending(self, limit: int = 100) -> List[PaymentDiscrepancy]:
        open_rows = [row for row in self._rows.values() if not row.is_resolved]
        return sorted(open_rows, key=lambda row: row.created_at)[:limit]

    async def mark_attempted(self, discrepancy_id: str, reason: str) -> None:
        row = self._rows[discrepancy_id]
        self._rows[discrepancy_id] = row.model_copy(
            update={"attempts": row.attempts + 1, "reason": reason}
        )

    async def mark_resolved(self, discrepancy_id: str) -> None:
        row = self._rows[discrepancy_id]
        self._rows[discrepancy_id] = row.model_copy(
            update={"attempts": row.attempts + 1, "resolved_at": utcnow()}
        )

    def all(self) -> List[PaymentDiscrepancy]:
        return list(self._rows.values())
