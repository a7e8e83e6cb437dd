# backend/carshare/repositories/__init__.py
"""
Repository layer for the booking engine.

Key Components:
- BookingRepository / VehicleRepository / ReconciliationQueue: interfaces
  the services depend on
- InMemory*: adapters for tests and local runs
- SqlAlchemy*: relational adapters (PostgreSQL in production, SQLite locally)

Usage:
    from carshare.repositories import SqlAlchemyBookingRepository
    from carshare.database import SessionLocal

    repository = SqlAlchemyBookingRepository(SessionLocal)
    booking = await repository.find(booking_id)
"""

from .interfaces import BookingRepository, ReconciliationQueue, VehicleRepository
from .memory import InMemoryBookingRepository, InMemoryReconciliationQueue, InMemoryVehicleRepository
from .sqlalchemy_repository import (
    SqlAlchemyBookingRepository,
    SqlAlchemyReconciliationQueue,
    SqlAlchemyVehicleRepository,
)

__all__ = [
    "BookingRepository",
    "InMemoryBookingRepository",
    "InMemoryReconciliationQueue",
    "InMemoryVehicleRepository",
    "ReconciliationQueue",
    "SqlAlchemyBookingRepository",
    "SqlAlchemyReconciliationQueue",
    "SqlAlchemyVehicleRepository",
    "VehicleRepository",
]
