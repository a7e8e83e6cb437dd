# backend/carshare/repositories/sqlalchemy_repository.py
"""
SQLAlchemy-backed repository adapters.

Each call opens its own session from the injected factory and runs the
blocking work in a worker thread via ``asyncio.to_thread``. Writes follow
the same error contract as the in-memory adapters:

- overlap with a blocking booking -> BookingConflictException
- status mismatch on update -> StaleStateException
- any other database failure -> RepositoryException
"""

import asyncio
from datetime import datetime, timezone
from enum import Enum
import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..core.exceptions import (
    BookingConflictException,
    NotFoundException,
    RepositoryException,
    StaleStateException,
)
from ..models.booking import BLOCKING_STATUSES, Booking, BookingStatus, utcnow
from ..models.payment import DiscrepancyOperation, PaymentDiscrepancy
from ..models.records import BookingRecord, PaymentDiscrepancyRecord, VehicleRecord
from ..models.vehicle import DepositPolicy, Vehicle
from .interfaces import BookingRepository, ReconciliationQueue, VehicleRepository

logger = logging.getLogger(__name__)

OVERLAP_CONSTRAINT = "ex_bookings_vehicle_dates"
EXCLUSION_VIOLATION_SQLSTATE = "23P01"

_BOOKING_COLUMNS = tuple(column.key for column in BookingRecord.__table__.columns)
_BLOCKING_VALUES = tuple(status.value for status in BLOCKING_STATUSES)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_column_value(item) for item in value]
    return value


def _column_values(values: Mapping[str, Any]) -> Dict[str, Any]:
    unknown = set(values) - set(_BOOKING_COLUMNS)
    if unknown:
        raise RepositoryException(f"Unknown booking fields in patch: {sorted(unknown)}")
    return {key: _column_value(value) for key, value in values.items()}


def _is_overlap_violation(exc: IntegrityError) -> bool:
    orig = exc.orig
    if getattr(orig, "pgcode", None) == EXCLUSION_VIOLATION_SQLSTATE:
        return True
    return OVERLAP_CONSTRAINT in str(orig)


def booking_from_record(record: BookingRecord) -> Booking:
    data = {key: getattr(record, key) for key in _BOOKING_COLUMNS}
    for key in ("created_at", "updated_at", "pickup_recorded_at", "return_recorded_at"):
        data[key] = _as_utc(data[key])
    data["pickup_photos"] = list(data["pickup_photos"] or [])
    data["return_photos"] = list(data["return_photos"] or [])
    return Booking.model_validate(data)


def booking_to_record(booking: Booking) -> BookingRecord:
    values = _column_values({key: getattr(booking, key) for key in _BOOKING_COLUMNS})
    return BookingRecord(**values)


class SqlAlchemyBookingRepository(BookingRepository):
    """
    Booking store over a relational database.

    On PostgreSQL the exclusion constraint installed with the table rejects
    overlapping blocking bookings across processes. Within a process the
    pre-insert overlap query and the write run under one lock so SQLite
    (which has no exclusion constraints) keeps the same guarantee.
    """

    def __init__(self, session_factory: Callable[[], Session] | sessionmaker[Session]) -> None:
        self._session_factory = session_factory
        self._write_lock = threading.Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

    async def find(self, booking_id: str) -> Optional[Booking]:
        return await asyncio.to_thread(self._find, booking_id)

    async def find_by_vehicle_and_status(
        self, vehicle_id: str, statuses: Iterable[BookingStatus]
    ) -> List[Booking]:
        values = [status.value for status in statuses]
        return await asyncio.to_thread(
            self._select,
            lambda stmt: stmt.where(
                BookingRecord.vehicle_id == vehicle_id, BookingRecord.status.in_(values)
            ).order_by(BookingRecord.start_date),
        )

    async def insert(self, booking: Booking) -> Booking:
        return await asyncio.to_thread(self._insert, booking)

    async def update_with_expected_status(
        self,
        booking_id: str,
        expected_status: BookingStatus,
        patch: Mapping[str, Any],
    ) -> Booking:
        return await asyncio.to_thread(self._update, booking_id, expected_status, dict(patch))

    async def find_by_renter(
        self, renter_id: str, status: Optional[BookingStatus] = None
    ) -> List[Booking]:
        return await asyncio.to_thread(
            self._select, self._party_filter(BookingRecord.renter_id == renter_id, status)
        )

    async def find_by_owner(
        self, owner_id: str, status: Optional[BookingStatus] = None
    ) -> List[Booking]:
        return await asyncio.to_thread(
            self._select, self._party_filter(BookingRecord.owner_id == owner_id, status)
        )

    async def find_by_status_updated_before(
        self, status: BookingStatus, cutoff: datetime
    ) -> List[Booking]:
        return await asyncio.to_thread(
            self._select,
            lambda stmt: stmt.where(
                BookingRecord.status == status.value, BookingRecord.updated_at < cutoff
            ).order_by(BookingRecord.updated_at),
        )

    @staticmethod
    def _party_filter(condition: Any, status: Optional[BookingStatus]) -> Callable[[Any], Any]:
        def apply(stmt: Any) -> Any:
            stmt = stmt.where(condition)
            if status is not None:
                stmt = stmt.where(BookingRecord.status == status.value)
            return stmt.order_by(BookingRecord.created_at.desc())

        return apply

    # Sync implementations (worker thread)

    def _find(self, booking_id: str) -> Optional[Booking]:
        try:
            with self._session_factory() as session:
                record = session.get(BookingRecord, booking_id)
                return booking_from_record(record) if record is not None else None
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading booking {booking_id}: {str(e)}")
            raise RepositoryException(f"Failed to load booking: {str(e)}") from e

    def _select(self, build: Callable[[Any], Any]) -> List[Booking]:
        try:
            with self._session_factory() as session:
                records = session.scalars(build(select(BookingRecord))).all()
                return [booking_from_record(record) for record in records]
        except SQLAlchemyError as e:
            self.logger.error(f"Error querying bookings: {str(e)}")
            raise RepositoryException(f"Failed to query bookings: {str(e)}") from e

    def _insert(self, booking: Booking) -> Booking:
        with self._write_lock, self._session_factory() as session:
            try:
                conflicts = session.scalars(
                    select(BookingRecord.id).where(
                        BookingRecord.vehicle_id == booking.vehicle_id,
                        BookingRecord.status.in_(_BLOCKING_VALUES),
                        BookingRecord.start_date <= booking.end_date,
                        BookingRecord.end_date >= booking.start_date,
                    )
                ).all()
                if conflicts:
                    raise BookingConflictException(
                        details={
                            "vehicle_id": booking.vehicle_id,
                            "conflicting_booking_ids": list(conflicts),
                        }
                    )
                if session.get(BookingRecord, booking.id) is not None:
                    raise BookingConflictException(
                        f"Booking {booking.id} already exists", details={"booking_id": booking.id}
                    )
                record = booking_to_record(booking)
                session.add(record)
                session.commit()
                return booking_from_record(record)
            except IntegrityError as exc:
                session.rollback()
                if _is_overlap_violation(exc):
                    self.logger.info(
                        "Overlap rejected by constraint for vehicle %s", booking.vehicle_id
                    )
                    raise BookingConflictException(
                        details={"vehicle_id": booking.vehicle_id, "conflicting_booking_ids": []}
                    ) from exc
                self.logger.error("Integrity error creating booking: %s", exc, exc_info=True)
                raise RepositoryException(f"Integrity constraint violated: {exc}") from exc
            except SQLAlchemyError as e:
                session.rollback()
                self.logger.error(f"Error creating booking: {str(e)}")
                raise RepositoryException(f"Failed to create booking: {str(e)}") from e

    def _update(
        self, booking_id: str, expected_status: BookingStatus, patch: Dict[str, Any]
    ) -> Booking:
        values = _column_values(patch)
        values["updated_at"] = utcnow()
        with self._write_lock, self._session_factory() as session:
            try:
                result = session.execute(
                    update(BookingRecord)
                    .where(
                        BookingRecord.id == booking_id,
                        BookingRecord.status == expected_status.value,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    session.rollback()
                    current = session.get(BookingRecord, booking_id)
                    if current is None:
                        raise NotFoundException(
                            f"Booking {booking_id} not found", code="BOOKING_NOT_FOUND"
                        )
                    raise StaleStateException(booking_id, expected_status.value, current.status)
                session.commit()
                record = session.get(BookingRecord, booking_id, populate_existing=True)
                return booking_from_record(record)
            except IntegrityError as exc:
                session.rollback()
                if _is_overlap_violation(exc):
                    raise BookingConflictException(details={"booking_id": booking_id}) from exc
                self.logger.error("Integrity error updating booking: %s", exc, exc_info=True)
                raise RepositoryException(f"Integrity constraint violated: {exc}") from exc
            except SQLAlchemyError as e:
                session.rollback()
                self.logger.error(f"Error updating booking {booking_id}: {str(e)}")
                raise RepositoryException(f"Failed to update booking: {str(e)}") from e


class SqlAlchemyVehicleRepository(VehicleRepository):
    def __init__(self, session_factory: Callable[[], Session] | sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    async def get(self, vehicle_id: str) -> Optional[Vehicle]:
        return await asyncio.to_thread(self._get, vehicle_id)

    def add(self, vehicle: Vehicle) -> None:
        """Upsert a listing (seeding and tests; listings are owned elsewhere)."""
        try:
            with self._session_factory() as session:
                session.merge(
                    VehicleRecord(
                        id=vehicle.id,
                        owner_id=vehicle.owner_id,
                        daily_rate=vehicle.daily_rate,
                        security_deposit=vehicle.deposit_policy.amount,
                        status=vehicle.status.value,
                    )
                )
                session.commit()
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to store vehicle: {str(e)}") from e

    def _get(self, vehicle_id: str) -> Optional[Vehicle]:
        try:
            with self._session_factory() as session:
                record = session.get(VehicleRecord, vehicle_id)
                if record is None:
                    return None
                return Vehicle(
                    id=record.id,
                    owner_id=record.owner_id,
                    daily_rate=record.daily_rate,
                    deposit_policy=DepositPolicy(amount=record.security_deposit),
                    status=record.status,
                )
        except SQLAlchemyError as e:
            logger.error(f"Error loading vehicle {vehicle_id}: {str(e)}")
            raise RepositoryException(f"Failed to load vehicle: {str(e)}") from e


class SqlAlchemyReconciliationQueue(ReconciliationQueue):
    def __init__(self, session_factory: Callable[[], Session] | sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    async def record(self, discrepancy: PaymentDiscrepancy) -> PaymentDiscrepancy:
        await asyncio.to_thread(self._record, discrepancy)
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
        return await asyncio.to_thread(self._pending, limit)

    async def mark_attempted(self, discrepancy_id: str, reason: str) -> None:
        await asyncio.to_thread(self._mark, discrepancy_id, reason, False)

    async def mark_resolved(self, discrepancy_id: str) -> None:
        await asyncio.to_thread(self._mark, discrepancy_id, None, True)

    def _record(self, discrepancy: PaymentDiscrepancy) -> None:
        try:
            with self._session_factory() as session:
                session.add(
                    PaymentDiscrepancyRecord(
                        id=discrepancy.id,
                        booking_id=discrepancy.booking_id,
                        operation=discrepancy.operation.value,
                        payment_reference=discrepancy.payment_reference,
                        amount=discrepancy.amount,
                        reason=discrepancy.reason,
                        attempts=discrepancy.attempts,
                        created_at=discrepancy.created_at,
                        resolved_at=discrepancy.resolved_at,
                    )
                )
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error recording payment discrepancy: {str(e)}")
            raise RepositoryException(f"Failed to record discrepancy: {str(e)}") from e

    def _pending(self, limit: int) -> List[PaymentDiscrepancy]:
        try:
            with self._session_factory() as session:
                records = session.scalars(
                    select(PaymentDiscrepancyRecord)
                    .where(PaymentDiscrepancyRecord.resolved_at.is_(None))
                    .order_by(PaymentDiscrepancyRecord.created_at)
                    .limit(limit)
                ).all()
                return [
                    PaymentDiscrepancy(
                        id=record.id,
                        booking_id=record.booking_id,
                        operation=DiscrepancyOperation(record.operation),
                        payment_reference=record.payment_reference,
                        amount=record.amount,
                        reason=record.reason,
                        attempts=record.attempts,
                        created_at=_as_utc(record.created_at),
                        resolved_at=_as_utc(record.resolved_at),
                    )
                    for record in records
                ]
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to load discrepancies: {str(e)}") from e

    def _mark(self, discrepancy_id: str, reason: Optional[str], resolved: bool) -> None:
        try:
            with self._session_factory() as session:
                record = session.get(PaymentDiscrepancyRecord, discrepancy_id)
                if record is None:
                    raise NotFoundException(
                        f"Discrepancy {discrepancy_id} not found", code="DISCREPANCY_NOT_FOUND"
                    )
                record.attempts += 1
                if reason is not None:
                    record.reason = reason
                if resolved:
                    record.resolved_at = utcnow()
                session.commit()
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to update discrepancy: {str(e)}") from e
