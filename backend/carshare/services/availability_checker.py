# backend/carshare/services/availability_checker.py
"""
Availability checks for vehicle bookings.

A vehicle is unavailable for a closed date range when any booking in a
blocking status overlaps it: ``start <= requested_end and end >= requested_start``.
Both end dates are inclusive, so a booking ending on the 15th blocks a new
one starting on the 15th.

This is a pre-check. The repository repeats it atomically at insert time.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, List, Optional, Sequence

from ..core.config import settings
from ..core.exceptions import ValidationException
from ..models.booking import BLOCKING_STATUSES, Booking
from ..repositories.interfaces import BookingRepository
from .base import BaseService


@dataclass(frozen=True)
class DateWindow:
    start_date: date
    end_date: date

    def to_dict(self) -> dict[str, str]:
        return {"start_date": self.start_date.isoformat(), "end_date": self.end_date.isoformat()}


@dataclass(frozen=True)
class AvailabilityResult:
    vehicle_id: str
    is_available: bool
    conflicting_booking_ids: Sequence[str] = ()
    alternatives: Sequence[DateWindow] = ()


def validate_date_range(start_date: date, end_date: date, *, allow_same_day: bool = True) -> None:
    """New rental requests pass ``allow_same_day=False``: they must span at least one night."""
    if end_date < start_date or (not allow_same_day and end_date == start_date):
        raise ValidationException(
            "End date must be after start date"
            if not allow_same_day
            else "End date must not be before start date",
            code="INVALID_DATE_RANGE",
            details={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
        )


class AvailabilityChecker(BaseService):
    """
    Overlap detection against blocking bookings, plus nearby open windows.
    """

    def __init__(
        self,
        bookings: BookingRepository,
        *,
        horizon_days: Optional[int] = None,
        max_suggestions: Optional[int] = None,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        super().__init__()
        self.bookings = bookings
        self.horizon_days = (
            settings.availability_search_horizon_days if horizon_days is None else horizon_days
        )
        self.max_suggestions = (
            settings.availability_max_suggestions if max_suggestions is None else max_suggestions
        )
        self._today = today or date.today

    async def blocking_bookings(self, vehicle_id: str) -> List[Booking]:
        return await self.bookings.find_by_vehicle_and_status(vehicle_id, BLOCKING_STATUSES)

    @BaseService.measure_operation("find_conflicts")
    async def find_conflicts(
        self,
        vehicle_id: str,
        start_date: date,
        end_date: date,
        *,
        exclude_booking_id: Optional[str] = None,
    ) -> List[Booking]:
        """Blocking bookings of the vehicle that overlap ``[start_date, end_date]``."""
        validate_date_range(start_date, end_date)
        return [
            booking
            for booking in await self.blocking_bookings(vehicle_id)
            if booking.id != exclude_booking_id and booking.overlaps(start_date, end_date)
        ]

    async def is_available(self, vehicle_id: str, start_date: date, end_date: date) -> bool:
        return not await self.find_conflicts(vehicle_id, start_date, end_date)

    @BaseService.measure_operation("suggest_alternatives")
    async def suggest_alternatives(
        self,
        vehicle_id: str,
        start_date: date,
        end_date: date,
        *,
        limit: Optional[int] = None,
    ) -> List[DateWindow]:
        """
        Same-length free windows near the requested one.

        Shifts of 1..horizon days are probed nearest first; at equal distance
        the later window is offered before the earlier one. Windows starting
        before today are skipped.
        """
        validate_date_range(start_date, end_date)
        limit = self.max_suggestions if limit is None else limit
        if limit <= 0:
            return []

        blocking = await self.blocking_bookings(vehicle_id)
        length = end_date - start_date
        today = self._today()
        found: List[DateWindow] = []

        for distance in range(1, self.horizon_days + 1):
            for shift in (distance, -distance):
                candidate_start = start_date + timedelta(days=shift)
                if candidate_start < today:
                    continue
                candidate_end = candidate_start + length
                if any(booking.overlaps(candidate_start, candidate_end) for booking in blocking):
                    continue
                found.append(DateWindow(candidate_start, candidate_end))
                if len(found) >= limit:
                    return found
        return found

    @BaseService.measure_operation("check_availability")
    async def check(self, vehicle_id: str, start_date: date, end_date: date) -> AvailabilityResult:
        """Availability verdict with alternatives when the range is taken."""
        conflicts = await self.find_conflicts(vehicle_id, start_date, end_date)
        if not conflicts:
            return AvailabilityResult(vehicle_id=vehicle_id, is_available=True)

        self.logger.info(
            "Vehicle %s unavailable %s..%s, %d conflicting bookings",
            vehicle_id,
            start_date,
            end_date,
            len(conflicts),
        )
        return AvailabilityResult(
            vehicle_id=vehicle_id,
            is_available=False,
            conflicting_booking_ids=tuple(booking.id for booking in conflicts),
            alternatives=tuple(await self.suggest_alternatives(vehicle_id, start_date, end_date)),
        )
