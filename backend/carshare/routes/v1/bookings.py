# backend/carshare/routes/v1/bookings.py
"""
Booking routes - API v1

Versioned booking endpoints under /api/v1/bookings.
All business logic delegated to BookingService.

Endpoints:
    POST /availability - Check if a date range is free (with alternatives)
    POST /quote - Price a rental
    POST / - Request a booking (places the payment hold)
    GET / - List my bookings as renter or owner
    GET /{booking_id} - Booking details
    POST /{booking_id}/accept - Owner accepts a request
    POST /{booking_id}/reject - Owner rejects a request (hold released)
    POST /{booking_id}/confirm - Renter pays (hold captured)
    POST /{booking_id}/cancel - Renter withdraws a request (hold released)
    POST /{booking_id}/share-contact - Exchange contact details
    POST /{booking_id}/ready - Mark ready for pickup
    POST /{booking_id}/pickup - Record pickup checklist, rental starts
    POST /{booking_id}/return - Record return checklist
    POST /{booking_id}/complete - Close the rental
    POST /{booking_id}/dispute - Open a dispute
    POST /{booking_id}/refund - Support refund on a settled booking
"""

import logging
from typing import Annotated, NoReturn, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Path, Query, status

from ...api.dependencies import get_booking_service, get_current_actor
from ...core.enums import ActorRole
from ...core.exceptions import DomainException, ValidationException
from ...models.booking import BookingStatus
from ...principal import Actor
from ...schemas.booking import (
    AvailabilityCheckRequest,
    AvailabilityCheckResponse,
    BookingConfirmRequest,
    BookingCreate,
    BookingListResponse,
    BookingReasonRequest,
    BookingResponse,
    ChecklistSubmission,
    DisputeRequest,
    PriceQuoteRequest,
    PriceQuoteResponse,
    RefundRequest,
)
from ...services.booking_service import BookingService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["bookings-v1"])

ULID_PATH_PATTERN = r"^[0-9A-HJKMNP-TV-Z]{26}$"

BookingId = Annotated[
    str,
    Path(
        description="Booking ULID",
        pattern=ULID_PATH_PATTERN,
        examples=["01HF4G12ABCDEF3456789XYZAB"],
    ),
]


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.post("/availability", response_model=AvailabilityCheckResponse)
async def check_availability(
    check_data: AvailabilityCheckRequest = Body(...),
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> AvailabilityCheckResponse:
    """Check whether the vehicle is free for the dates; suggests nearby windows if not."""
    try:
        result = await booking_service.check_availability(
            check_data.vehicle_id, check_data.start_date, check_data.end_date
        )
        return AvailabilityCheckResponse.from_result(result)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/quote", response_model=PriceQuoteResponse)
async def quote_price(
    quote_data: PriceQuoteRequest = Body(...),
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> PriceQuoteResponse:
    try:
        quote = await booking_service.quote_price(
            quote_data.vehicle_id,
            quote_data.start_date,
            quote_data.end_date,
            quote_data.insurance_tier,
        )
        return PriceQuoteResponse.from_quote(quote)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    booking_data: BookingCreate = Body(...),
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    """
    Request a booking.

    The payment hold is placed before the booking is stored; any failure
    after that releases the hold again.
    """
    try:
        booking = await booking_service.create_booking_request(
            actor,
            vehicle_id=booking_data.vehicle_id,
            start_date=booking_data.start_date,
            end_date=booking_data.end_date,
            pickup_location=booking_data.pickup_location,
            return_location=booking_data.return_location,
            payment_method=booking_data.payment_method,
            insurance_tier=booking_data.insurance_tier,
            renter_notes=booking_data.renter_notes,
        )
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/", response_model=BookingListResponse)
async def list_bookings(
    as_role: Optional[ActorRole] = Query(None, description="renter or owner; defaults to the actor role"),
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingListResponse:
    try:
        role = as_role or actor.role
        if role == ActorRole.RENTER:
            bookings = await booking_service.list_renter_bookings(actor, status_filter)
        elif role == ActorRole.OWNER:
            bookings = await booking_service.list_owner_bookings(actor, status_filter)
        else:
            raise ValidationException("as_role must be renter or owner", code="INVALID_LIST_ROLE")
        return BookingListResponse(
            items=[BookingResponse.from_booking(booking) for booking in bookings],
            total=len(bookings),
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: BookingId,
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        return BookingResponse.from_booking(await booking_service.get_booking(booking_id, actor))
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/accept", response_model=BookingResponse)
async def accept_booking(
    booking_id: BookingId,
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        return BookingResponse.from_booking(await booking_service.accept_booking(booking_id, actor))
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/reject", response_model=BookingResponse)
async def reject_booking(
    booking_id: BookingId,
    body: BookingReasonRequest = Body(default_factory=BookingReasonRequest),
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = await booking_service.reject_booking(booking_id, actor, body.reason)
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/confirm", response_model=BookingResponse)
async def confirm_booking(
    booking_id: BookingId,
    body: BookingConfirmRequest = Body(default_factory=BookingConfirmRequest),
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    """Capture the payment; the booking is confirmed only once the charge succeeded."""
    try:
        booking = await booking_service.confirm_and_pay(booking_id, actor, body.payment_method)
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: BookingId,
    body: BookingReasonRequest = Body(default_factory=BookingReasonRequest),
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = await booking_service.cancel_booking(booking_id, actor, body.reason)
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/share-contact", response_model=BookingResponse)
async def share_contact(
    booking_id: BookingId,
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        return BookingResponse.from_booking(await booking_service.share_contact(booking_id, actor))
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/ready", response_model=BookingResponse)
async def mark_ready_for_pickup(
    booking_id: BookingId,
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = await booking_service.mark_ready_for_pickup(booking_id, actor)
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/pickup", response_model=BookingResponse)
async def record_pickup(
    body: ChecklistSubmission,
    booking_id: BookingId,
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = await booking_service.record_pickup(
            booking_id, actor, body.checklist, body.photos
        )
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/return", response_model=BookingResponse)
async def record_return(
    body: ChecklistSubmission,
    booking_id: BookingId,
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = await booking_service.record_return(
            booking_id, actor, body.checklist, body.photos
        )
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_rental(
    booking_id: BookingId,
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = await booking_service.complete_rental(booking_id, actor)
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/dispute", response_model=BookingResponse)
async def open_dispute(
    body: DisputeRequest,
    booking_id: BookingId,
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = await booking_service.open_dispute(booking_id, actor, body.reason)
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/refund", response_model=BookingResponse)
async def refund_booking(
    booking_id: BookingId,
    body: RefundRequest = Body(default_factory=RefundRequest),
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = await booking_service.refund_booking(
            booking_id, actor, amount=body.amount, reason=body.reason
        )
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)
