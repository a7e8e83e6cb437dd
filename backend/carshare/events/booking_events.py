"""Typed booking events and the in-process dispatcher."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
import inspect
import logging
from typing import Awaitable, Callable, List, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field

from ..core.enums import ActorRole
from ..models.booking import BookingStatus, PaymentStatus, utcnow

logger = logging.getLogger("carshare.events.bookings")


class NotificationAudience(str, Enum):
    """Who hears about a transition; resolved to user ids by the notifier."""

    OWNER = "owner"
    RENTER = "renter"
    BOTH = "both"
    COUNTERPARTY = "counterparty"
    PARTIES_AND_SUPPORT = "parties_and_support"


class BookingEvent(BaseModel):
    """Base class for booking domain events."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    booking_id: str
    renter_id: str
    owner_id: str
    occurred_at: datetime = Field(default_factory=utcnow)


class BookingRequested(BookingEvent):
    """Fired after a booking request is persisted with its payment hold."""

    vehicle_id: str
    total_amount: int


class BookingTransitioned(BookingEvent):
    """
    Fired after a lifecycle transition commits.

    Self-transitions (contact sharing, readiness, return checklist) carry the
    same status in ``from_status`` and ``to_status`` and are told apart by
    ``action``.
    """

    from_status: BookingStatus
    to_status: BookingStatus
    action: str
    actor_id: str
    actor_role: ActorRole
    reason: Optional[str] = None
    audience: NotificationAudience = NotificationAudience.BOTH


class BookingPaymentAdjusted(BookingEvent):
    """Fired after a refund is applied to a settled booking."""

    payment_status: PaymentStatus
    amount: int
    actor_id: str


BookingEventListener = Callable[[BookingEvent], Union[None, Awaitable[None]]]


class BookingEvents:
    """
    Registry for booking event listeners.

    Dispatch happens after the triggering write has committed. Listener
    failures are logged and swallowed: delivery problems must never undo a
    transition.
    """

    def __init__(self) -> None:
        self._listeners: List[BookingEventListener] = []

    def register(self, listener: BookingEventListener) -> None:
        self._listeners.append(listener)

    def unregister(self, listener: BookingEventListener) -> None:
        self._listeners = [existing for existing in self._listeners if existing is not listener]

    def listeners(self) -> Sequence[BookingEventListener]:  # pragma: no cover - trivial accessor
        return tuple(self._listeners)

    async def dispatch(self, event: BookingEvent) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Booking event listener error: %s", listener)
        logger.info(
            "booking_event=%s booking_id=%s",
            event.__class__.__name__,
            event.booking_id,
        )


__all__ = [
    "BookingEvent",
    "BookingEventListener",
    "BookingEvents",
    "BookingPaymentAdjusted",
    "BookingRequested",
    "BookingTransitioned",
    "NotificationAudience",
]
