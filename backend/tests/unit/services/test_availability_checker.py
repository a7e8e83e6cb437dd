from datetime import date

import pytest

from carshare.core.exceptions import ValidationException
from carshare.models.booking import BookingStatus
from carshare.repositories.memory import InMemoryBookingRepository
from carshare.services.availability_checker import AvailabilityChecker, DateWindow
from tests.helpers.fakes import VEHICLE_ID, make_booking

TODAY = date(2024, 3, 1)


def _checker(*bookings, horizon_days=14, max_suggestions=3, today=TODAY) -> AvailabilityChecker:
    return AvailabilityChecker(
        InMemoryBookingRepository(bookings),
        horizon_days=horizon_days,
        max_suggestions=max_suggestions,
        today=lambda: today,
    )


class TestFindConflicts:
    @pytest.mark.asyncio
    async def test_overlapping_confirmed_booking_blocks(self):
        existing = make_booking(
            start=date(2024, 3, 10), end=date(2024, 3, 15), status=BookingStatus.CONFIRMED
        )
        checker = _checker(existing)

        result = await checker.check(VEHICLE_ID, date(2024, 3, 14), date(2024, 3, 18))

        assert result.is_available is False
        assert list(result.conflicting_booking_ids) == [existing.id]

    @pytest.mark.asyncio
    async def test_end_dates_are_inclusive(self):
        checker = _checker(
            make_booking(start=date(2024, 3, 10), end=date(2024, 3, 15), status=BookingStatus.CONFIRMED)
        )
        assert await checker.is_available(VEHICLE_ID, date(2024, 3, 15), date(2024, 3, 17)) is False
        assert await checker.is_available(VEHICLE_ID, date(2024, 3, 16), date(2024, 3, 17)) is True
        assert await checker.is_available(VEHICLE_ID, date(2024, 3, 5), date(2024, 3, 9)) is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status",
        [
            BookingStatus.PENDING,
            BookingStatus.ACCEPTED,
            BookingStatus.CONFIRMED,
            BookingStatus.IN_PROGRESS,
            BookingStatus.DISPUTED,
        ],
    )
    async def test_blocking_statuses(self, status):
        checker = _checker(make_booking(status=status))
        assert await checker.is_available(VEHICLE_ID, date(2024, 3, 12), date(2024, 3, 13)) is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status",
        [
            BookingStatus.CANCELLED,
            BookingStatus.REJECTED,
            BookingStatus.EXPIRED,
            BookingStatus.COMPLETED,
        ],
    )
    async def test_closed_bookings_free_their_dates(self, status):
        checker = _checker(make_booking(status=status))
        assert await checker.is_available(VEHICLE_ID, date(2024, 3, 12), date(2024, 3, 13)) is True

    @pytest.mark.asyncio
    async def test_other_vehicles_do_not_conflict(self):
        checker = _checker(make_booking(vehicle_id="veh-2", status=BookingStatus.CONFIRMED))
        assert await checker.is_available(VEHICLE_ID, date(2024, 3, 12), date(2024, 3, 13)) is True

    @pytest.mark.asyncio
    async def test_exclude_booking_id(self):
        existing = make_booking(status=BookingStatus.CONFIRMED)
        checker = _checker(existing)
        conflicts = await checker.find_conflicts(
            VEHICLE_ID, date(2024, 3, 12), date(2024, 3, 13), exclude_booking_id=existing.id
        )
        assert conflicts == []

    @pytest.mark.asyncio
    async def test_inverted_range_is_rejected(self):
        with pytest.raises(ValidationException):
            await _checker().check(VEHICLE_ID, date(2024, 3, 18), date(2024, 3, 14))


class TestSuggestAlternatives:
    @pytest.mark.asyncio
    async def test_nearest_windows_later_first(self):
        # blocked 10..15; request 14..18 (length 4 days)
        checker = _checker(
            make_booking(start=date(2024, 3, 10), end=date(2024, 3, 15), status=BookingStatus.CONFIRMED)
        )

        result = await checker.check(VEHICLE_ID, date(2024, 3, 14), date(2024, 3, 18))

        assert list(result.alternatives) == [
            DateWindow(date(2024, 3, 16), date(2024, 3, 20)),
            DateWindow(date(2024, 3, 17), date(2024, 3, 21)),
            DateWindow(date(2024, 3, 18), date(2024, 3, 22)),
        ]

    @pytest.mark.asyncio
    async def test_earlier_window_offered_at_equal_distance(self):
        # blocked 10..12; request 11..11; +1 (12) blocked, -1 (10) blocked, +2 (13) free, -2 (9) free
        checker = _checker(
            make_booking(start=date(2024, 3, 10), end=date(2024, 3, 12), status=BookingStatus.PENDING),
            max_suggestions=2,
        )
        windows = await checker.suggest_alternatives(VEHICLE_ID, date(2024, 3, 11), date(2024, 3, 11))
        assert windows == [
            DateWindow(date(2024, 3, 13), date(2024, 3, 13)),
            DateWindow(date(2024, 3, 9), date(2024, 3, 9)),
        ]

    @pytest.mark.asyncio
    async def test_windows_before_today_are_skipped(self):
        checker = _checker(
            make_booking(start=date(2024, 3, 2), end=date(2024, 3, 3), status=BookingStatus.CONFIRMED),
            max_suggestions=5,
            horizon_days=3,
        )
        windows = await checker.suggest_alternatives(VEHICLE_ID, date(2024, 3, 2), date(2024, 3, 3))
        assert all(window.start_date >= TODAY for window in windows)
        assert DateWindow(date(2024, 3, 1), date(2024, 3, 2)) not in windows

    @pytest.mark.asyncio
    async def test_zero_limit_returns_nothing(self):
        checker = _checker(max_suggestions=0)
        assert await checker.suggest_alternatives(VEHICLE_ID, date(2024, 3, 5), date(2024, 3, 6)) == []

    @pytest.mark.asyncio
    async def test_available_result_has_no_alternatives(self):
        result = await _checker().check(VEHICLE_ID, date(2024, 3, 5), date(2024, 3, 6))
        assert result.is_available is True
        assert list(result.alternatives) == []

    def test_window_to_dict(self):
        window = DateWindow(date(2024, 3, 16), date(2024, 3, 20))
        assert window.to_dict() == {"start_date": "2024-03-16", "end_date": "2024-03-20"}
