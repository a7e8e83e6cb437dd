"""SQLAlchemy adapters against an in-memory SQLite database."""

from datetime import date, datetime, timedelta, timezone

import pytest

from carshare.core.enums import VehicleStatus
from carshare.core.exceptions import (
    BookingConflictException,
    NotFoundException,
    RepositoryException,
    StaleStateException,
)
from carshare.database import build_engine, build_session_factory, init_db
from carshare.models.booking import BookingStatus, PaymentStatus, VehicleChecklist
from carshare.models.payment import DiscrepancyOperation, PaymentDiscrepancy
from carshare.repositories.sqlalchemy_repository import (
    SqlAlchemyBookingRepository,
    SqlAlchemyReconciliationQueue,
    SqlAlchemyVehicleRepository,
)
from tests.helpers.fakes import CHECKLIST, OWNER_ID, RENTER_ID, make_booking, make_vehicle

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def repo(session_factory) -> SqlAlchemyBookingRepository:
    return SqlAlchemyBookingRepository(session_factory)


class TestBookingStore:
    @pytest.mark.asyncio
    async def test_round_trip(self, repo):
        booking = make_booking(renter_notes="child seat please")

        stored = await repo.insert(booking)
        loaded = await repo.find(booking.id)

        assert stored.id == booking.id
        assert loaded.start_date == date(2024, 3, 10)
        assert loaded.status == BookingStatus.PENDING
        assert loaded.payment_status == PaymentStatus.PREAUTHORIZED
        assert loaded.total_amount == booking.total_amount
        assert loaded.renter_notes == "child seat please"
        assert loaded.created_at.tzinfo is not None
        assert await repo.find("01HNOTTHERE0000000000000000") is None

    @pytest.mark.asyncio
    async def test_checklist_and_photos_survive(self, repo):
        booking = make_booking(status=BookingStatus.CONFIRMED, payment_status=PaymentStatus.CHARGED)
        await repo.insert(booking)

        updated = await repo.update_with_expected_status(
            booking.id,
            BookingStatus.CONFIRMED,
            {
                "status": BookingStatus.IN_PROGRESS,
                "pickup_checklist": VehicleChecklist.model_validate(CHECKLIST),
                "pickup_photos": ["https://img/p1.jpg"],
                "pickup_recorded_at": T0,
            },
        )

        assert updated.status == BookingStatus.IN_PROGRESS
        assert updated.pickup_checklist.fuel_level == 80
        assert updated.pickup_checklist.exterior == {"scratches": False}
        assert updated.pickup_photos == ["https://img/p1.jpg"]
        assert updated.pickup_recorded_at == T0

    @pytest.mark.asyncio
    async def test_overlap_is_rejected(self, repo):
        existing = make_booking(status=BookingStatus.CONFIRMED, payment_status=PaymentStatus.CHARGED)
        await repo.insert(existing)

        with pytest.raises(BookingConflictException) as exc_info:
            await repo.insert(make_booking(start=date(2024, 3, 15), end=date(2024, 3, 18)))
        assert exc_info.value.details["conflicting_booking_ids"] == [existing.id]

    @pytest.mark.asyncio
    async def test_closed_booking_frees_dates(self, repo):
        await repo.insert(
            make_booking(status=BookingStatus.REJECTED, payment_status=PaymentStatus.REFUNDED)
        )
        await repo.insert(make_booking())

        blocking = await repo.find_by_vehicle_and_status("veh-1", [BookingStatus.PENDING])
        assert len(blocking) == 1

    @pytest.mark.asyncio
    async def test_stale_update(self, repo):
        booking = make_booking()
        await repo.insert(booking)
        await repo.update_with_expected_status(
            booking.id, BookingStatus.PENDING, {"status": BookingStatus.ACCEPTED}
        )

        with pytest.raises(StaleStateException) as exc_info:
            await repo.update_with_expected_status(
                booking.id, BookingStatus.PENDING, {"status": BookingStatus.REJECTED}
            )
        assert exc_info.value.details["actual_status"] == "accepted"

    @pytest.mark.asyncio
    async def test_update_missing_booking(self, repo):
        with pytest.raises(NotFoundException):
            await repo.update_with_expected_status(
                "01HNOTTHERE0000000000000000", BookingStatus.PENDING, {"status": BookingStatus.ACCEPTED}
            )

    @pytest.mark.asyncio
    async def test_unknown_patch_field(self, repo):
        booking = make_booking()
        await repo.insert(booking)
        with pytest.raises(RepositoryException):
            await repo.update_with_expected_status(booking.id, BookingStatus.PENDING, {"colour": "red"})

    @pytest.mark.asyncio
    async def test_party_queries(self, repo):
        older = make_booking(created_at=T0)
        newer = make_booking(
            start=date(2024, 4, 1), end=date(2024, 4, 3), created_at=T0 + timedelta(hours=2)
        )
        await repo.insert(older)
        await repo.insert(newer)

        assert [b.id for b in await repo.find_by_renter(RENTER_ID)] == [newer.id, older.id]
        assert [b.id for b in await repo.find_by_owner(OWNER_ID, BookingStatus.PENDING)] == [
            newer.id,
            older.id,
        ]
        assert await repo.find_by_owner(OWNER_ID, BookingStatus.COMPLETED) == []

    @pytest.mark.asyncio
    async def test_status_updated_before(self, repo):
        stale = make_booking(updated_at=T0 - timedelta(days=2))
        fresh = make_booking(start=date(2024, 4, 1), end=date(2024, 4, 3), updated_at=T0)
        await repo.insert(stale)
        await repo.insert(fresh)

        found = await repo.find_by_status_updated_before(BookingStatus.PENDING, T0 - timedelta(days=1))
        assert [b.id for b in found] == [stale.id]


@pytest.mark.asyncio
async def test_vehicle_store(session_factory):
    vehicles = SqlAlchemyVehicleRepository(session_factory)
    vehicles.add(make_vehicle(deposit=400, status=VehicleStatus.MAINTENANCE))

    vehicle = await vehicles.get("veh-1")

    assert vehicle.owner_id == OWNER_ID
    assert vehicle.deposit_policy.amount == 400
    assert vehicle.status == VehicleStatus.MAINTENANCE
    assert await vehicles.get("veh-404") is None


@pytest.mark.asyncio
async def test_reconciliation_queue(session_factory):
    queue = SqlAlchemyReconciliationQueue(session_factory)
    await queue.record(
        PaymentDiscrepancy(
            id="01HDISCREPANCY000000000001",
            booking_id=None,
            operation=DiscrepancyOperation.REFUND,
            payment_reference="pi_1",
            amount=300,
            reason="refund after failed write",
            created_at=T0,
        )
    )

    [pending] = await queue.pending()
    assert pending.operation == DiscrepancyOperation.REFUND
    assert pending.amount == 300
    assert pending.created_at == T0

    await queue.mark_attempted(pending.id, "gateway down")
    [retried] = await queue.pending()
    assert retried.attempts == 1
    assert retried.reason == "gateway down"

    await queue.mark_resolved(pending.id)
    assert await queue.pending() == []

    with pytest.raises(NotFoundException):
        await queue.mark_resolved("01HDISCREPANCY000000000404")
