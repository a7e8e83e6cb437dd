# backend/carshare/models/records.py
"""
SQLAlchemy tables backing the relational repository adapters.

The overlap invariant is enforced by the store itself on PostgreSQL: an
exclusion constraint over (vehicle_id, daterange(start_date, end_date, '[]'))
restricted to blocking statuses rejects a concurrent overlapping insert
even when both requests passed the availability pre-check.
"""

from datetime import date, datetime, timezone

from sqlalchemy import (
    DDL,
    JSON,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    Boolean,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..database import Base
from .booking import BLOCKING_STATUSES


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookingRecord(Base):
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(26), primary_key=True)
    vehicle_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    renter_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    duration_days: Mapped[int] = mapped_column(Integer, nullable=False)
    pickup_location: Mapped[str] = mapped_column(Text, nullable=False)
    return_location: Mapped[str] = mapped_column(Text, nullable=False)
    insurance_tier: Mapped[str] = mapped_column(String(16), nullable=False)

    daily_rate: Mapped[int] = mapped_column(Integer, nullable=False)
    base_price: Mapped[int] = mapped_column(Integer, nullable=False)
    insurance_fee: Mapped[int] = mapped_column(Integer, nullable=False)
    service_fee: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    deposit_amount: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    captured_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refunded_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    contact_shared: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    owner_ready_for_pickup: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    renter_ready_for_pickup: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    pickup_checklist: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    pickup_photos: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    pickup_recorded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    return_checklist: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    return_photos: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    return_recorded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    renter_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    owner_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("ix_bookings_vehicle_status", "vehicle_id", "status"),
        Index("ix_bookings_status_updated", "status", "updated_at"),
        CheckConstraint("end_date >= start_date", name="ck_booking_dates_ordered"),
        CheckConstraint("duration_days >= 1", name="ck_booking_duration_positive"),
    )


_blocking_sql = ", ".join(f"'{status.value}'" for status in sorted(BLOCKING_STATUSES, key=str))

event.listen(
    BookingRecord.__table__,
    "after_create",
    DDL("CREATE EXTENSION IF NOT EXISTS btree_gist").execute_if(dialect="postgresql"),
)
event.listen(
    BookingRecord.__table__,
    "after_create",
    DDL(
        "ALTER TABLE bookings ADD CONSTRAINT ex_bookings_vehicle_dates "
        "EXCLUDE USING gist (vehicle_id WITH =, "
        "daterange(start_date, end_date, '[]') WITH &&) "
        f"WHERE (status IN ({_blocking_sql}))"
    ).execute_if(dialect="postgresql"),
)


class VehicleRecord(Base):
    __tablename__ = "vehicles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    daily_rate: Mapped[int] = mapped_column(Integer, nullable=False)
    security_deposit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="available")


class PaymentDiscrepancyRecord(Base):
    __tablename__ = "payment_discrepancies"

    id: Mapped[str] = mapped_column(String(26), primary_key=True)
    booking_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)
    operation: Mapped[str] = mapped_column(String(16), nullable=False)
    payment_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
