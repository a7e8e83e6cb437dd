# backend/carshare/services/booking_service.py
"""
Booking Service for the rental marketplace.

Entry point used by the API layer. Creation runs the request protocol:

1. validate input (no side effects yet)
2. availability pre-check, with alternative dates when taken
3. price quote
4. payment hold (the least reversible step runs before persistence)
5. insert; the repository re-checks overlap atomically
6. on any persistence failure the hold is released before the error surfaces

Every other operation is a named entry into ``BookingLifecycle``.
"""

import asyncio
from datetime import date, datetime, timedelta
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from ..core.config import settings
from ..core.enums import ActorRole, InsuranceTier, VehicleStatus
from ..core.exceptions import (
    BookingConflictException,
    ForbiddenException,
    InvalidTransitionException,
    NotFoundException,
    PaymentStateException,
    PersistenceException,
    ReleaseFailedException,
    StaleStateException,
    ValidationException,
    VehicleUnavailableException,
)
from ..core.ulid_helper import generate_ulid
from ..events.booking_events import BookingEvents, BookingRequested
from ..models.booking import Booking, BookingStatus, PaymentStatus, VehicleChecklist, utcnow
from ..models.payment import DiscrepancyOperation, PaymentDiscrepancy, PaymentHandle
from ..models.vehicle import Vehicle
from ..principal import Actor
from ..repositories.interfaces import BookingRepository, ReconciliationQueue, VehicleRepository
from .availability_checker import AvailabilityChecker, AvailabilityResult, validate_date_range
from .base import BaseService
from .booking_lifecycle import BookingAction, BookingLifecycle
from .payment_coordinator import PaymentCoordinator
from .pricing_calculator import PriceQuote, PricingCalculator

logger = logging.getLogger(__name__)


class BookingService(BaseService):
    """
    Service layer for booking operations.

    All operations take the acting user explicitly as an ``Actor``; nothing
    is read from ambient request state.
    """

    def __init__(
        self,
        bookings: BookingRepository,
        vehicles: VehicleRepository,
        payments: PaymentCoordinator,
        events: BookingEvents,
        reconciliation: ReconciliationQueue,
        *,
        availability: Optional[AvailabilityChecker] = None,
        pricing: Optional[PricingCalculator] = None,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        super().__init__()
        self.bookings = bookings
        self.vehicles = vehicles
        self.payments = payments
        self.events = events
        self.reconciliation = reconciliation
        self._today = today or date.today
        self.availability = availability or AvailabilityChecker(bookings, today=self._today)
        self.pricing = pricing or PricingCalculator()
        self.lifecycle = BookingLifecycle(bookings, payments, events, reconciliation)
        self._background_tasks: Set[asyncio.Task] = set()

    # Availability and pricing

    @BaseService.measure_operation("check_availability")
    async def check_availability(
        self, vehicle_id: str, start_date: date, end_date: date
    ) -> AvailabilityResult:
        await self._get_vehicle(vehicle_id)
        return await self.availability.check(vehicle_id, start_date, end_date)

    @BaseService.measure_operation("quote_price")
    async def quote_price(
        self,
        vehicle_id: str,
        start_date: date,
        end_date: date,
        insurance_tier: InsuranceTier = InsuranceTier.BASIC,
    ) -> PriceQuote:
        vehicle = await self._get_vehicle(vehicle_id)
        return self.pricing.quote(
            vehicle.daily_rate, start_date, end_date, insurance_tier, vehicle.deposit_policy
        )

    # Creation

    @BaseService.measure_operation("create_booking_request")
    async def create_booking_request(
        self,
        actor: Actor,
        vehicle_id: str,
        start_date: date,
        end_date: date,
        pickup_location: str,
        return_location: str,
        payment_method: str,
        insurance_tier: InsuranceTier = InsuranceTier.BASIC,
        renter_notes: Optional[str] = None,
    ) -> Booking:
        """
        Request a booking and place the payment hold.

        Raises:
            ValidationException: Bad dates, locations or actor
            NotFoundException: Unknown vehicle
            VehicleUnavailableException: Dates taken (details carry alternatives)
            PaymentDeclinedException: Hold refused or timed out; nothing created
            PersistenceException: Store failure; the hold has been released
        """
        if actor.role != ActorRole.RENTER:
            raise ForbiddenException("Only renters can request bookings", code="RENTER_REQUIRED")
        pickup_location, return_location = self._validate_request(
            start_date, end_date, pickup_location, return_location, payment_method
        )

        vehicle = await self._get_vehicle(vehicle_id)
        if vehicle.owner_id == actor.id:
            raise ValidationException("You cannot book your own vehicle", code="OWN_VEHICLE")
        if vehicle.status == VehicleStatus.MAINTENANCE:
            raise VehicleUnavailableException(vehicle_id)

        availability = await self.availability.check(vehicle_id, start_date, end_date)
        if not availability.is_available:
            raise VehicleUnavailableException(
                vehicle_id,
                alternatives=[window.to_dict() for window in availability.alternatives],
                conflicting_booking_ids=list(availability.conflicting_booking_ids),
            )

        quote = self.pricing.quote(
            vehicle.daily_rate, start_date, end_date, insurance_tier, vehicle.deposit_policy
        )
        booking_id = generate_ulid()
        handle = await self.payments.authorize(quote.total_amount, payment_method, booking_id)

        booking = self._build_booking(
            booking_id,
            actor,
            vehicle,
            quote,
            start_date,
            end_date,
            pickup_location,
            return_location,
            handle,
            renter_notes,
        )
        try:
            created = await self.bookings.insert(booking)
        except asyncio.CancelledError:
            self._schedule_orphan_release(booking_id, handle)
            raise
        except BookingConflictException as exc:
            self.logger.info(
                "Overlap detected at insert for vehicle %s, releasing hold %s",
                vehicle_id,
                handle.reference,
            )
            await self._release_or_queue(booking_id, handle)
            alternatives = await self.availability.suggest_alternatives(
                vehicle_id, start_date, end_date
            )
            raise VehicleUnavailableException(
                vehicle_id,
                alternatives=[window.to_dict() for window in alternatives],
                conflicting_booking_ids=exc.details.get("conflicting_booking_ids", []),
            ) from exc
        except Exception as exc:
            self.logger.error(
                "Failed to store booking %s, releasing hold %s: %s",
                booking_id,
                handle.reference,
                exc,
            )
            await self._release_or_queue(booking_id, handle)
            raise PersistenceException(operation="create_booking_request") from exc

        self.log_operation(
            "booking_requested",
            booking_id=created.id,
            vehicle_id=vehicle_id,
            total_amount=created.total_amount,
        )
        await self.events.dispatch(
            BookingRequested(
                booking_id=created.id,
                renter_id=created.renter_id,
                owner_id=created.owner_id,
                vehicle_id=created.vehicle_id,
                total_amount=created.total_amount,
            )
        )
        return created

    # Lifecycle operations

    @BaseService.measure_operation("accept_booking")
    async def accept_booking(self, booking_id: str, actor: Actor) -> Booking:
        return await self.lifecycle.apply(booking_id, actor, BookingAction.ACCEPT)

    @BaseService.measure_operation("reject_booking")
    async def reject_booking(
        self, booking_id: str, actor: Actor, reason: Optional[str] = None
    ) -> Booking:
        return await self.lifecycle.apply(
            booking_id, actor, BookingAction.REJECT, {"reason": reason}
        )

    @BaseService.measure_operation("confirm_and_pay")
    async def confirm_and_pay(
        self, booking_id: str, actor: Actor, payment_method: Optional[str] = None
    ) -> Booking:
        """
        Capture the hold and confirm.

        After a failed capture the booking stays accepted with
        ``payment_status=failed``; calling again with a new
        ``payment_method`` places and captures a fresh hold.
        """
        return await self.lifecycle.apply(
            booking_id, actor, BookingAction.CONFIRM, {"payment_method": payment_method}
        )

    @BaseService.measure_operation("cancel_booking")
    async def cancel_booking(
        self, booking_id: str, actor: Actor, reason: Optional[str] = None
    ) -> Booking:
        return await self.lifecycle.apply(
            booking_id, actor, BookingAction.CANCEL, {"reason": reason}
        )

    @BaseService.measure_operation("share_contact")
    async def share_contact(self, booking_id: str, actor: Actor) -> Booking:
        return await self.lifecycle.apply(booking_id, actor, BookingAction.SHARE_CONTACT)

    @BaseService.measure_operation("mark_ready_for_pickup")
    async def mark_ready_for_pickup(self, booking_id: str, actor: Actor) -> Booking:
        return await self.lifecycle.apply(booking_id, actor, BookingAction.MARK_READY)

    @BaseService.measure_operation("record_pickup")
    async def record_pickup(
        self,
        booking_id: str,
        actor: Actor,
        checklist: VehicleChecklist | Dict[str, Any],
        photos: Optional[List[str]] = None,
    ) -> Booking:
        return await self.lifecycle.apply(
            booking_id, actor, BookingAction.PICKUP, {"checklist": checklist, "photos": photos}
        )

    @BaseService.measure_operation("record_return")
    async def record_return(
        self,
        booking_id: str,
        actor: Actor,
        checklist: VehicleChecklist | Dict[str, Any],
        photos: Optional[List[str]] = None,
    ) -> Booking:
        return await self.lifecycle.apply(
            booking_id,
            actor,
            BookingAction.RECORD_RETURN,
            {"checklist": checklist, "photos": photos},
        )

    @BaseService.measure_operation("complete_rental")
    async def complete_rental(self, booking_id: str, actor: Actor) -> Booking:
        return await self.lifecycle.apply(booking_id, actor, BookingAction.COMPLETE)

    @BaseService.measure_operation("open_dispute")
    async def open_dispute(self, booking_id: str, actor: Actor, reason: str) -> Booking:
        return await self.lifecycle.apply(
            booking_id, actor, BookingAction.DISPUTE, {"reason": reason}
        )

    @BaseService.measure_operation("refund_booking")
    async def refund_booking(
        self,
        booking_id: str,
        actor: Actor,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Booking:
        return await self.lifecycle.refund(booking_id, actor, amount, reason)

    async def transition(
        self,
        booking_id: str,
        actor: Actor,
        target: BookingStatus,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Booking:
        return await self.lifecycle.transition(booking_id, actor, target, payload)

    # Queries

    @BaseService.measure_operation("get_booking")
    async def get_booking(self, booking_id: str, actor: Actor) -> Booking:
        booking = await self.lifecycle.load(booking_id)
        if actor.role in (ActorRole.SUPPORT, ActorRole.SYSTEM):
            return booking
        if booking.role_of(actor.id) is None:
            raise ForbiddenException(
                "You do not have access to this booking", code="BOOKING_ACCESS_DENIED"
            )
        return booking

    @BaseService.measure_operation("list_renter_bookings")
    async def list_renter_bookings(
        self, actor: Actor, status: Optional[BookingStatus] = None
    ) -> List[Booking]:
        return await self.bookings.find_by_renter(actor.id, status)

    @BaseService.measure_operation("list_owner_bookings")
    async def list_owner_bookings(
        self, actor: Actor, status: Optional[BookingStatus] = None
    ) -> List[Booking]:
        return await self.bookings.find_by_owner(actor.id, status)

    # Sweeps

    @BaseService.measure_operation("expire_stale_requests")
    async def expire_stale_requests(self, now: Optional[datetime] = None) -> List[Booking]:
        """
        Expire requests nobody acted on.

        Pending requests older than the owner response window and accepted
        requests left unpaid past the payment window move to ``expired``
        and their holds are released.
        """
        now = now or utcnow()
        system = Actor.system("expiry_sweep")
        windows = (
            (BookingStatus.PENDING, timedelta(hours=settings.pending_request_ttl_hours)),
            (BookingStatus.ACCEPTED, timedelta(hours=settings.accepted_payment_ttl_hours)),
        )

        expired: List[Booking] = []
        for status, ttl in windows:
            for booking in await self.bookings.find_by_status_updated_before(status, now - ttl):
                try:
                    expired.append(
                        await self.lifecycle.apply(booking.id, system, BookingAction.EXPIRE)
                    )
                except (StaleStateException, InvalidTransitionException) as exc:
                    # moved on since it was selected
                    self.logger.info("Skipping expiry of booking %s: %s", booking.id, exc.message)

        if expired:
            self.logger.info("Expired %d stale booking requests", len(expired))
        return expired

    # Internals

    async def _get_vehicle(self, vehicle_id: str) -> Vehicle:
        vehicle = await self.vehicles.get(vehicle_id)
        if vehicle is None:
            raise NotFoundException(f"Vehicle {vehicle_id} not found", code="VEHICLE_NOT_FOUND")
        return vehicle

    def _validate_request(
        self,
        start_date: date,
        end_date: date,
        pickup_location: str,
        return_location: str,
        payment_method: str,
    ) -> tuple[str, str]:
        validate_date_range(start_date, end_date, allow_same_day=False)
        if start_date < self._today():
            raise ValidationException(
                "Start date cannot be in the past",
                code="START_DATE_IN_PAST",
                details={"start_date": start_date.isoformat()},
            )
        pickup = (pickup_location or "").strip()
        dropoff = (return_location or "").strip()
        if not pickup or not dropoff:
            raise ValidationException(
                "Pickup and return locations are required", code="LOCATION_REQUIRED"
            )
        if not (payment_method or "").strip():
            raise ValidationException("A payment method is required", code="PAYMENT_METHOD_REQUIRED")
        return pickup, dropoff

    @staticmethod
    def _build_booking(
        booking_id: str,
        actor: Actor,
        vehicle: Vehicle,
        quote: PriceQuote,
        start_date: date,
        end_date: date,
        pickup_location: str,
        return_location: str,
        handle: PaymentHandle,
        renter_notes: Optional[str],
    ) -> Booking:
        now = utcnow()
        return Booking(
            id=booking_id,
            vehicle_id=vehicle.id,
            renter_id=actor.id,
            owner_id=vehicle.owner_id,
            start_date=start_date,
            end_date=end_date,
            duration_days=quote.duration_days,
            pickup_location=pickup_location,
            return_location=return_location,
            insurance_tier=quote.insurance_tier,
            daily_rate=quote.daily_rate,
            base_price=quote.base_price,
            insurance_fee=quote.insurance_fee,
            service_fee=quote.service_fee,
            total_amount=quote.total_amount,
            deposit_amount=quote.deposit_amount,
            status=BookingStatus.PENDING,
            payment_status=PaymentStatus.PREAUTHORIZED,
            payment_reference=handle.reference,
            renter_notes=renter_notes,
            created_at=now,
            updated_at=now,
        )

    async def _release_or_queue(self, booking_id: str, handle: PaymentHandle) -> None:
        """Compensate a hold whose booking was never stored."""
        try:
            await self.payments.release(handle)
        except (ReleaseFailedException, PaymentStateException) as exc:
            self.logger.error("Compensating release of %s failed: %s", handle.reference, exc.message)
            await self.reconciliation.record(
                PaymentDiscrepancy(
                    id=generate_ulid(),
                    booking_id=None,
                    operation=DiscrepancyOperation.RELEASE,
                    payment_reference=handle.reference,
                    amount=handle.amount,
                    reason=f"compensation for {booking_id}: {exc.message}",
                )
            )

    def _schedule_orphan_release(self, booking_id: str, handle: PaymentHandle) -> None:
        """The caller went away after the hold was placed; release it in the background."""
        self.logger.warning(
            "Booking request %s cancelled after authorization, scheduling release of %s",
            booking_id,
            handle.reference,
        )
        task = asyncio.get_running_loop().create_task(self._release_orphan(booking_id, handle))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _release_orphan(self, booking_id: str, handle: PaymentHandle) -> None:
        # the insert may have landed before the cancellation; a stored booking
        # keeps its hold and follows the normal lifecycle (or expires)
        if await self.bookings.find(booking_id) is not None:
            self.logger.info("Orphan check: booking %s was stored, keeping hold", booking_id)
            return
        await self._release_or_queue(booking_id, handle)

    async def drain_background_tasks(self) -> None:
        """Wait for pending compensation tasks (shutdown and tests)."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
