# backend/tests/conftest.py
"""
Pytest configuration for the booking engine.

Settings are forced to an in-memory SQLite database and a Stripe-less
gateway BEFORE any carshare import, so no test can reach a real database
or payment processor.
"""

import os
import sys

# CRITICAL: Set test settings BEFORE any carshare imports!
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["BACKGROUND_JOBS_ENABLED"] = "false"
os.environ["SUPPORT_USER_ID"] = "support-1"

# Add the backend directory to Python path so imports work
backend_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, backend_dir)

from datetime import date

import pytest

from carshare.events.booking_events import BookingEvents
from carshare.principal import Actor
from carshare.repositories.memory import InMemoryReconciliationQueue, InMemoryVehicleRepository
from carshare.services.availability_checker import AvailabilityChecker
from carshare.services.booking_service import BookingService
from carshare.services.notification_sink import BookingNotifier
from carshare.services.payment_coordinator import PaymentCoordinator
from carshare.services.pricing_calculator import PricingCalculator
from tests.helpers.fakes import (
    OTHER_RENTER_ID,
    OWNER_ID,
    RENTER_ID,
    SUPPORT_ID,
    FailingBookingRepository,
    FakePaymentGateway,
    RecordingNotificationSink,
    make_vehicle,
)

TODAY = date(2024, 3, 1)


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def renter() -> Actor:
    return Actor.renter(RENTER_ID)


@pytest.fixture
def other_renter() -> Actor:
    return Actor.renter(OTHER_RENTER_ID)


@pytest.fixture
def owner() -> Actor:
    return Actor.owner(OWNER_ID)


@pytest.fixture
def support() -> Actor:
    return Actor.support(SUPPORT_ID)


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def sink() -> RecordingNotificationSink:
    return RecordingNotificationSink()


@pytest.fixture
def booking_repo() -> FailingBookingRepository:
    return FailingBookingRepository()


@pytest.fixture
def vehicle_repo() -> InMemoryVehicleRepository:
    return InMemoryVehicleRepository([make_vehicle()])


@pytest.fixture
def reconciliation_queue() -> InMemoryReconciliationQueue:
    return InMemoryReconciliationQueue()


@pytest.fixture
def payments(gateway: FakePaymentGateway) -> PaymentCoordinator:
    """Coordinator with short timeouts and no poll backoff."""
    return PaymentCoordinator(
        gateway,
        authorize_timeout=0.05,
        capture_timeout=0.05,
        release_timeout=0.05,
        poll_attempts=2,
        poll_backoff_seconds=0,
    )


@pytest.fixture
def events(sink: RecordingNotificationSink) -> BookingEvents:
    registry = BookingEvents()
    registry.register(BookingNotifier(sink, support_user_id=SUPPORT_ID))
    return registry


@pytest.fixture
def booking_service(
    booking_repo,
    vehicle_repo,
    payments,
    events,
    reconciliation_queue,
) -> BookingService:
    return BookingService(
        bookings=booking_repo,
        vehicles=vehicle_repo,
        payments=payments,
        events=events,
        reconciliation=reconciliation_queue,
        availability=AvailabilityChecker(
            booking_repo, horizon_days=14, max_suggestions=3, today=lambda: TODAY
        ),
        pricing=PricingCalculator(
            service_fee_rate=0.10,
            deposit_rate=0.30,
            insurance_daily_rates={"basic": 50, "standard": 75, "premium": 100},
        ),
        today=lambda: TODAY,
    )
