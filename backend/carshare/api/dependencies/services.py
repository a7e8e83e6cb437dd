# backend/carshare/api/dependencies/services.py
"""
Service layer dependencies for dependency injection.

The application builds one ``BookingService`` at startup and stores it on
``app.state``; routes receive it through ``get_booking_service``.
"""

import logging
from typing import Optional

from fastapi import Request
from sqlalchemy.orm import Session, sessionmaker

from ...core.exceptions import ServiceException
from ...database import SessionLocal
from ...events.booking_events import BookingEvents
from ...repositories.sqlalchemy_repository import (
    SqlAlchemyBookingRepository,
    SqlAlchemyReconciliationQueue,
    SqlAlchemyVehicleRepository,
)
from ...services.booking_service import BookingService
from ...services.notification_sink import BookingNotifier, LoggingNotificationSink, NotificationSink
from ...services.payment_coordinator import PaymentCoordinator
from ...services.payment_gateway import PaymentGateway
from ...services.payment_reconciler import PaymentReconciler
from ...services.stripe_gateway import StripePaymentGateway

logger = logging.getLogger(__name__)


def build_booking_service(
    session_factory: Optional[sessionmaker[Session]] = None,
    *,
    gateway: Optional[PaymentGateway] = None,
    sink: Optional[NotificationSink] = None,
) -> BookingService:
    """Wire the default production stack: SQLAlchemy stores, Stripe, logging sink."""
    factory = session_factory or SessionLocal
    bookings = SqlAlchemyBookingRepository(factory)
    events = BookingEvents()
    events.register(BookingNotifier(sink or LoggingNotificationSink()))
    service = BookingService(
        bookings=bookings,
        vehicles=SqlAlchemyVehicleRepository(factory),
        payments=PaymentCoordinator(gateway or StripePaymentGateway()),
        events=events,
        reconciliation=SqlAlchemyReconciliationQueue(factory),
    )
    logger.info("Booking service wired with SQLAlchemy repositories")
    return service


def build_reconciler(service: BookingService) -> PaymentReconciler:
    return PaymentReconciler(service.reconciliation, service.payments, service.bookings)


def get_booking_service(request: Request) -> BookingService:
    service = getattr(request.app.state, "booking_service", None)
    if service is None:
        raise ServiceException("Booking service is not configured", code="SERVICE_UNAVAILABLE")
    return service
