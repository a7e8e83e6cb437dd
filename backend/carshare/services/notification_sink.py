# backend/carshare/services/notification_sink.py
"""
Notification delivery for booking events.

``NotificationSink`` is the outbound port (push, email, in-app inbox live
behind it). ``BookingNotifier`` subscribes to ``BookingEvents`` and turns
each event into ``notify`` calls for the right recipients. Delivery is fire
and forget: a failing sink is logged and never affects the booking.
"""

from abc import ABC, abstractmethod
import logging
from typing import Any, Dict, List, Mapping

from ..core.config import settings
from ..events.booking_events import (
    BookingEvent,
    BookingPaymentAdjusted,
    BookingRequested,
    BookingTransitioned,
    NotificationAudience,
)

logger = logging.getLogger(__name__)


class NotificationSink(ABC):
    @abstractmethod
    async def notify(self, user_id: str, event_type: str, payload: Mapping[str, Any]) -> None:
        """Deliver one notification to one user."""


class LoggingNotificationSink(NotificationSink):
    """Sink that only logs; used when no transport is wired in."""

    async def notify(self, user_id: str, event_type: str, payload: Mapping[str, Any]) -> None:
        logger.info(
            "notification user_id=%s event_type=%s booking_id=%s",
            user_id,
            event_type,
            payload.get("booking_id"),
        )


class BookingNotifier:
    """BookingEvents listener that fans events out to the sink."""

    def __init__(self, sink: NotificationSink, *, support_user_id: str | None = None) -> None:
        self.sink = sink
        self.support_user_id = support_user_id or settings.support_user_id

    async def __call__(self, event: BookingEvent) -> None:
        event_type, payload = self._describe(event)
        for user_id in self.recipients(event):
            try:
                await self.sink.notify(user_id, event_type, payload)
            except Exception:
                logger.exception(
                    "Notification delivery failed for user %s (%s, booking %s)",
                    user_id,
                    event_type,
                    event.booking_id,
                )

    def recipients(self, event: BookingEvent) -> List[str]:
        if isinstance(event, BookingRequested):
            return [event.owner_id]
        if isinstance(event, BookingPaymentAdjusted):
            return [event.renter_id]
        if not isinstance(event, BookingTransitioned):
            return []

        audience = event.audience
        if audience == NotificationAudience.OWNER:
            return [event.owner_id]
        if audience == NotificationAudience.RENTER:
            return [event.renter_id]
        if audience == NotificationAudience.COUNTERPARTY:
            if event.actor_id == event.renter_id:
                return [event.owner_id]
            if event.actor_id == event.owner_id:
                return [event.renter_id]
            return [event.renter_id, event.owner_id]
        parties = [event.renter_id, event.owner_id]
        if audience == NotificationAudience.PARTIES_AND_SUPPORT:
            parties.append(self.support_user_id)
        return parties

    @staticmethod
    def _describe(event: BookingEvent) -> tuple[str, Dict[str, Any]]:
        payload: Dict[str, Any] = {"booking_id": event.booking_id}
        if isinstance(event, BookingRequested):
            payload.update(vehicle_id=event.vehicle_id, total_amount=event.total_amount)
            return "booking_requested", payload
        if isinstance(event, BookingPaymentAdjusted):
            payload.update(payment_status=event.payment_status.value, amount=event.amount)
            return "booking_refunded", payload
        if isinstance(event, BookingTransitioned):
            payload.update(
                from_status=event.from_status.value,
                to_status=event.to_status.value,
                actor_id=event.actor_id,
                reason=event.reason,
            )
            return f"booking_{event.action}", payload
        return "booking_event", payload
