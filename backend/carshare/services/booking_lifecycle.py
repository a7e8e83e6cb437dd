# backend/carshare/services/booking_lifecycle.py
"""
Booking state machine.

Every valid edge lives in ``TRANSITIONS``; nothing else in the codebase
changes a booking's status. A transition is applied in this order:

1. load the booking and authorize the actor against it
2. reject terminal states and edges missing from the table
3. evaluate the rule's guard against the booking and payload
4. run the payment side effect (capture happens before the write)
5. persist with ``update_with_expected_status`` (optimistic check)
6. run post-commit payment effects (hold release after the write)
7. emit ``BookingTransitioned``

Payment failures that happen after the write has committed (release) do
not undo the transition; they are queued for reconciliation.
"""

from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Tuple

from pydantic import ValidationError

from ..core.exceptions import (
    CaptureFailedException,
    CaptureStatusUnknownException,
    ForbiddenException,
    InvalidTransitionException,
    NotFoundException,
    PaymentStateException,
    ReleaseFailedException,
    RefundFailedException,
    StaleStateException,
    ValidationException,
)
from ..core.enums import ActorRole
from ..constants.payment_status import map_payment_status
from ..core.ulid_helper import generate_ulid
from ..events.booking_events import (
    BookingEvents,
    BookingPaymentAdjusted,
    BookingTransitioned,
    NotificationAudience,
)
from ..models.booking import (
    Booking,
    BookingStatus,
    PaymentStatus,
    VehicleChecklist,
    is_payment_compatible,
    utcnow,
)
from ..models.payment import DiscrepancyOperation, HoldState, PaymentDiscrepancy, PaymentHandle
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..principal import Actor
from ..repositories.interfaces import BookingRepository, ReconciliationQueue
from .base import BaseService
from .payment_coordinator import PaymentCoordinator

logger = logging.getLogger(__name__)

Payload = Mapping[str, Any]
Guard = Callable[[Booking, Actor, Payload], Optional[str]]
PatchBuilder = Callable[[Booking, Actor, Payload], Dict[str, Any]]


class BookingAction(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    CONFIRM = "confirm"
    CANCEL = "cancel"
    SHARE_CONTACT = "share_contact"
    MARK_READY = "mark_ready"
    PICKUP = "pickup"
    RECORD_RETURN = "record_return"
    COMPLETE = "complete"
    DISPUTE = "dispute"
    EXPIRE = "expire"


class PaymentEffect(str, Enum):
    NONE = "none"
    CAPTURE = "capture"
    RELEASE = "release"


@dataclass(frozen=True)
class TransitionRule:
    action: BookingAction
    sources: FrozenSet[BookingStatus]
    target: BookingStatus
    roles: FrozenSet[ActorRole]
    payment: PaymentEffect = PaymentEffect.NONE
    audience: NotificationAudience = NotificationAudience.BOTH
    guard: Optional[Guard] = None
    patch: Optional[PatchBuilder] = field(default=None, compare=False)

    @property
    def is_self_transition(self) -> bool:
        return self.sources == frozenset({self.target})


# Payload helpers


def _reason(payload: Payload) -> Optional[str]:
    reason = payload.get("reason")
    if reason is None:
        return None
    reason = str(reason).strip()
    return reason or None


def _checklist(payload: Payload, key: str) -> Optional[VehicleChecklist]:
    raw = payload.get(key)
    if raw is None or isinstance(raw, VehicleChecklist):
        return raw
    try:
        return VehicleChecklist.model_validate(raw)
    except ValidationError as exc:
        raise ValidationException(
            f"Invalid {key.replace('_', ' ')}",
            code="INVALID_CHECKLIST",
            details={"errors": exc.errors(include_url=False)},
        ) from exc


def _photos(payload: Payload) -> list[str]:
    return [str(url) for url in payload.get("photos") or []]


# Guards return an error message when the transition is not allowed


def _guard_pickup(booking: Booking, actor: Actor, payload: Payload) -> Optional[str]:
    if not booking.contact_shared:
        return "Contact details must be shared before pickup"
    if not booking.ready_for_pickup:
        return "Both owner and renter must mark the booking ready for pickup"
    if _checklist(payload, "checklist") is None:
        return "A pickup checklist is required"
    return None


def _guard_record_return(booking: Booking, actor: Actor, payload: Payload) -> Optional[str]:
    if _checklist(payload, "checklist") is None:
        return "A return checklist is required"
    return None


def _guard_complete(booking: Booking, actor: Actor, payload: Payload) -> Optional[str]:
    if booking.return_checklist is None:
        return "A return checklist must be recorded before completing the rental"
    return None


def _guard_dispute(booking: Booking, actor: Actor, payload: Payload) -> Optional[str]:
    if _reason(payload) is None:
        return "A reason is required to open a dispute"
    return None


# Patch builders: the non-status fields a transition writes


def _patch_reject(booking: Booking, actor: Actor, payload: Payload) -> Dict[str, Any]:
    reason = _reason(payload)
    return {"owner_notes": reason} if reason else {}


def _patch_cancel(booking: Booking, actor: Actor, payload: Payload) -> Dict[str, Any]:
    patch: Dict[str, Any] = {"cancelled_by": actor.id}
    reason = _reason(payload)
    if reason:
        patch["renter_notes"] = reason
    return patch


def _patch_share_contact(booking: Booking, actor: Actor, payload: Payload) -> Dict[str, Any]:
    return {"contact_shared": True}


def _patch_mark_ready(booking: Booking, actor: Actor, payload: Payload) -> Dict[str, Any]:
    if actor.role == ActorRole.OWNER:
        return {"owner_ready_for_pickup": True}
    return {"renter_ready_for_pickup": True}


def _patch_pickup(booking: Booking, actor: Actor, payload: Payload) -> Dict[str, Any]:
    return {
        "pickup_checklist": _checklist(payload, "checklist"),
        "pickup_photos": _photos(payload),
        "pickup_recorded_at": utcnow(),
    }


def _patch_record_return(booking: Booking, actor: Actor, payload: Payload) -> Dict[str, Any]:
    return {
        "return_checklist": _checklist(payload, "checklist"),
        "return_photos": _photos(payload),
        "return_recorded_at": utcnow(),
    }


def _patch_dispute(booking: Booking, actor: Actor, payload: Payload) -> Dict[str, Any]:
    return {"dispute_reason": _reason(payload)}


_PARTIES = frozenset({ActorRole.RENTER, ActorRole.OWNER})
_S = BookingStatus

TRANSITIONS: Tuple[TransitionRule, ...] = (
    TransitionRule(
        BookingAction.ACCEPT,
        frozenset({_S.PENDING}),
        _S.ACCEPTED,
        frozenset({ActorRole.OWNER}),
        audience=NotificationAudience.RENTER,
    ),
    TransitionRule(
        BookingAction.REJECT,
        frozenset({_S.PENDING, _S.ACCEPTED}),
        _S.REJECTED,
        frozenset({ActorRole.OWNER}),
        payment=PaymentEffect.RELEASE,
        audience=NotificationAudience.RENTER,
        patch=_patch_reject,
    ),
    TransitionRule(
        BookingAction.CONFIRM,
        frozenset({_S.ACCEPTED}),
        _S.CONFIRMED,
        frozenset({ActorRole.RENTER}),
        payment=PaymentEffect.CAPTURE,
        audience=NotificationAudience.OWNER,
    ),
    TransitionRule(
        BookingAction.CANCEL,
        frozenset({_S.PENDING, _S.ACCEPTED}),
        _S.CANCELLED,
        frozenset({ActorRole.RENTER}),
        payment=PaymentEffect.RELEASE,
        patch=_patch_cancel,
    ),
    TransitionRule(
        BookingAction.SHARE_CONTACT,
        frozenset({_S.CONFIRMED}),
        _S.CONFIRMED,
        _PARTIES,
        patch=_patch_share_contact,
    ),
    TransitionRule(
        BookingAction.MARK_READY,
        frozenset({_S.CONFIRMED}),
        _S.CONFIRMED,
        _PARTIES,
        audience=NotificationAudience.COUNTERPARTY,
        patch=_patch_mark_ready,
    ),
    TransitionRule(
        BookingAction.PICKUP,
        frozenset({_S.CONFIRMED}),
        _S.IN_PROGRESS,
        _PARTIES,
        guard=_guard_pickup,
        patch=_patch_pickup,
    ),
    TransitionRule(
        BookingAction.RECORD_RETURN,
        frozenset({_S.IN_PROGRESS}),
        _S.IN_PROGRESS,
        _PARTIES,
        audience=NotificationAudience.COUNTERPARTY,
        guard=_guard_record_return,
        patch=_patch_record_return,
    ),
    TransitionRule(
        BookingAction.COMPLETE,
        frozenset({_S.IN_PROGRESS}),
        _S.COMPLETED,
        _PARTIES,
        guard=_guard_complete,
    ),
    TransitionRule(
        BookingAction.DISPUTE,
        frozenset({_S.CONFIRMED, _S.IN_PROGRESS}),
        _S.DISPUTED,
        _PARTIES,
        audience=NotificationAudience.PARTIES_AND_SUPPORT,
        guard=_guard_dispute,
        patch=_patch_dispute,
    ),
    TransitionRule(
        BookingAction.EXPIRE,
        frozenset({_S.PENDING, _S.ACCEPTED}),
        _S.EXPIRED,
        frozenset({ActorRole.SYSTEM}),
        payment=PaymentEffect.RELEASE,
    ),
)

RULES_BY_ACTION: Dict[BookingAction, TransitionRule] = {rule.action: rule for rule in TRANSITIONS}

# Statuses a refund adjustment may be applied to; the status itself is unchanged.
REFUNDABLE_STATUSES: FrozenSet[BookingStatus] = frozenset({_S.COMPLETED, _S.DISPUTED})


def allowed_actions(status: BookingStatus, role: ActorRole) -> Tuple[BookingAction, ...]:
    """Actions a role may take on a booking in ``status`` (guards not evaluated)."""
    return tuple(
        rule.action for rule in TRANSITIONS if status in rule.sources and role in rule.roles
    )


def find_rule(
    current: BookingStatus,
    target: BookingStatus,
    role: ActorRole,
    action: Optional[BookingAction] = None,
) -> Optional[TransitionRule]:
    """
    Rule for moving ``current`` to ``target``.

    Self-transitions share source and target, so ``action`` picks among
    them; without it the only non-self edge wins.
    """
    candidates = [
        rule
        for rule in TRANSITIONS
        if current in rule.sources
        and rule.target == target
        and role in rule.roles
        and (action is None or rule.action == action)
    ]
    if action is None:
        candidates = [rule for rule in candidates if not rule.is_self_transition]
    return candidates[0] if len(candidates) == 1 else None


class BookingLifecycle(BaseService):
    """Applies transitions from the table with their guards and payment effects."""

    def __init__(
        self,
        bookings: BookingRepository,
        payments: PaymentCoordinator,
        events: BookingEvents,
        reconciliation: ReconciliationQueue,
    ) -> None:
        super().__init__()
        self.bookings = bookings
        self.payments = payments
        self.events = events
        self.reconciliation = reconciliation

    async def load(self, booking_id: str) -> Booking:
        booking = await self.bookings.find(booking_id)
        if booking is None:
            raise NotFoundException(f"Booking {booking_id} not found", code="BOOKING_NOT_FOUND")
        return booking

    @staticmethod
    def authorize_actor(booking: Booking, actor: Actor) -> None:
        """The actor's claimed role must match its relation to the booking."""
        if actor.role == ActorRole.RENTER and actor.id != booking.renter_id:
            raise ForbiddenException(
                "Only the renter of this booking can act as renter", code="NOT_BOOKING_RENTER"
            )
        if actor.role == ActorRole.OWNER and actor.id != booking.owner_id:
            raise ForbiddenException(
                "Only the owner of this vehicle can act as owner", code="NOT_BOOKING_OWNER"
            )

    @BaseService.measure_operation("transition")
    async def transition(
        self,
        booking_id: str,
        actor: Actor,
        target: BookingStatus,
        payload: Optional[Payload] = None,
    ) -> Booking:
        """Move a booking to ``target``; ``payload['action']`` selects a self-transition."""
        payload = payload or {}
        booking = await self.load(booking_id)
        self.authorize_actor(booking, actor)
        self._reject_terminal(booking, target, actor)

        raw_action = payload.get("action")
        try:
            action = BookingAction(raw_action) if raw_action else None
        except ValueError:
            raise ValidationException(
                f"Unknown action: {raw_action}", code="INVALID_ACTION"
            ) from None

        rule = find_rule(booking.status, BookingStatus(target), actor.role, action)
        if rule is None:
            raise InvalidTransitionException(
                f"Cannot move booking from {booking.status.value} to {BookingStatus(target).value} "
                f"as {actor.role.value}",
                current_status=booking.status.value,
                target_status=BookingStatus(target).value,
                actor_role=actor.role.value,
            )
        return await self._apply_rule(booking, actor, rule, payload)

    async def apply(
        self,
        booking_id: str,
        actor: Actor,
        action: BookingAction,
        payload: Optional[Payload] = None,
    ) -> Booking:
        rule = RULES_BY_ACTION[BookingAction(action)]
        booking = await self.load(booking_id)
        self.authorize_actor(booking, actor)
        self._reject_terminal(booking, rule.target, actor)
        if booking.status not in rule.sources or actor.role not in rule.roles:
            raise InvalidTransitionException(
                f"Cannot {rule.action.value.replace('_', ' ')} a {booking.status.value} booking "
                f"as {actor.role.value}",
                current_status=booking.status.value,
                target_status=rule.target.value,
                actor_role=actor.role.value,
            )
        return await self._apply_rule(booking, actor, rule, payload or {})

    @BaseService.measure_operation("refund_adjustment")
    async def refund(
        self,
        booking_id: str,
        actor: Actor,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Booking:
        """
        Refund part or all of a settled booking's charge.

        Support only, on completed or disputed bookings. The status does not
        change; ``payment_status`` and ``refunded_amount`` do.
        """
        if actor.role != ActorRole.SUPPORT:
            raise ForbiddenException("Only support can issue refunds", code="REFUND_FORBIDDEN")
        booking = await self.load(booking_id)
        if booking.status not in REFUNDABLE_STATUSES:
            raise InvalidTransitionException(
                f"Cannot refund a {booking.status.value} booking",
                current_status=booking.status.value,
                target_status=booking.status.value,
                actor_role=actor.role.value,
            )

        handle = PaymentHandle.from_booking(booking)
        refunded = await self.payments.refund(handle, amount)
        payment_status = map_payment_status(refunded.state)
        refund_amount = refunded.refunded_amount - handle.refunded_amount
        try:
            updated = await self.bookings.update_with_expected_status(
                booking.id,
                booking.status,
                {"payment_status": payment_status, "refunded_amount": refunded.refunded_amount},
            )
        except Exception:
            self.logger.error(
                "Refund %s of %s succeeded but booking %s was not updated",
                refund_amount,
                handle.reference,
                booking.id,
                exc_info=True,
            )
            raise

        self.logger.info(
            "Refunded %s on booking %s (%s)", refund_amount, booking.id, reason or "no reason"
        )
        await self.events.dispatch(
            BookingPaymentAdjusted(
                booking_id=updated.id,
                renter_id=updated.renter_id,
                owner_id=updated.owner_id,
                payment_status=payment_status,
                amount=refund_amount,
                actor_id=actor.id,
            )
        )
        return updated

    # Internals

    @staticmethod
    def _reject_terminal(booking: Booking, target: BookingStatus, actor: Actor) -> None:
        if booking.is_terminal:
            raise InvalidTransitionException(
                f"Booking is already {booking.status.value}",
                current_status=booking.status.value,
                target_status=BookingStatus(target).value,
                actor_role=actor.role.value,
            )

    async def _apply_rule(
        self, booking: Booking, actor: Actor, rule: TransitionRule, payload: Payload
    ) -> Booking:
        if rule.guard is not None:
            problem = rule.guard(booking, actor, payload)
            if problem:
                raise InvalidTransitionException(
                    problem,
                    current_status=booking.status.value,
                    target_status=rule.target.value,
                    actor_role=actor.role.value,
                )

        patch: Dict[str, Any] = {"status": rule.target}
        if rule.patch is not None:
            patch.update(rule.patch(booking, actor, payload))

        if rule.payment == PaymentEffect.CAPTURE:
            patch.update(await self._capture(booking, payload))

        self._check_compatibility(booking, patch)

        try:
            updated = await self.bookings.update_with_expected_status(
                booking.id, booking.status, patch
            )
        except Exception:
            if rule.payment == PaymentEffect.CAPTURE:
                await self._compensate_capture(booking, patch)
            raise

        if rule.payment == PaymentEffect.RELEASE:
            updated = await self._release_after_commit(updated)

        prometheus_metrics.record_booking_transition(
            booking.status.value, rule.target.value, rule.action.value
        )
        self.logger.info(
            "Booking %s %s -> %s (%s by %s)",
            booking.id,
            booking.status.value,
            rule.target.value,
            rule.action.value,
            actor.id,
        )
        await self.events.dispatch(
            BookingTransitioned(
                booking_id=updated.id,
                renter_id=updated.renter_id,
                owner_id=updated.owner_id,
                from_status=booking.status,
                to_status=updated.status,
                action=rule.action.value,
                actor_id=actor.id,
                actor_role=actor.role,
                reason=_reason(payload),
                audience=rule.audience,
            )
        )
        return updated

    async def _capture(self, booking: Booking, payload: Payload) -> Dict[str, Any]:
        """
        Capture the booking's hold, or a fresh one after an earlier failure.

        Returns the payment fields to persist with the confirmation.
        """
        handle = PaymentHandle.from_booking(booking)
        if booking.payment_status == PaymentStatus.FAILED:
            payment_method = payload.get("payment_method")
            if not payment_method:
                raise ValidationException(
                    "A new payment method is required after a failed payment",
                    code="PAYMENT_METHOD_REQUIRED",
                )
            handle = await self.payments.authorize(
                booking.total_amount, str(payment_method), booking.id
            )

        try:
            captured = await self.payments.capture(handle)
        except PaymentStateException:
            current = await self.load(booking.id)
            if current.status != booking.status:
                # a concurrent transition already settled the hold
                raise StaleStateException(
                    booking.id, booking.status.value, current.status.value
                ) from None
            raise
        except CaptureFailedException as exc:
            await self._record_capture_failure(booking, handle, exc)
            raise
        except CaptureStatusUnknownException:
            if handle.reference != booking.payment_reference:
                # remember the new hold so a retry polls it instead of authorizing again
                await self._write_payment_fields(
                    booking,
                    {
                        "payment_status": PaymentStatus.PREAUTHORIZED,
                        "payment_reference": handle.reference,
                    },
                )
            raise

        return {
            "payment_status": PaymentStatus.CHARGED,
            "payment_reference": captured.reference,
            "captured_amount": captured.captured_amount,
        }

    async def _record_capture_failure(
        self, booking: Booking, handle: PaymentHandle, exc: CaptureFailedException
    ) -> None:
        """Keep the booking accepted with payment_status=failed so the renter can retry."""
        self.logger.warning(
            "Capture failed for booking %s (%s): %s", booking.id, handle.reference, exc.reason
        )
        try:
            released = await self.payments.release(handle)
            self.logger.info("Released uncapturable hold %s", released.reference)
        except PaymentStateException as state_exc:
            self.logger.info(
                "Hold %s is no longer held (%s), nothing to release",
                handle.reference,
                state_exc.reason,
            )
        except ReleaseFailedException as release_exc:
            await self._queue_discrepancy(
                booking.id, DiscrepancyOperation.RELEASE, handle, None, release_exc.message
            )
        await self._write_payment_fields(
            booking,
            {"payment_status": PaymentStatus.FAILED, "payment_reference": handle.reference},
        )

    async def _write_payment_fields(self, booking: Booking, patch: Mapping[str, Any]) -> None:
        """Best-effort record of a payment outcome; the payment error stays the one raised."""
        try:
            await self.bookings.update_with_expected_status(booking.id, booking.status, patch)
        except StaleStateException as exc:
            self.logger.warning(
                "Booking %s moved to %s before its payment outcome was stored",
                booking.id,
                exc.details.get("actual_status"),
            )

    async def _compensate_capture(self, booking: Booking, patch: Mapping[str, Any]) -> None:
        """The charge went through but the confirmation was not stored: give the money back."""
        handle = PaymentHandle(
            reference=patch["payment_reference"],
            amount=booking.total_amount,
            state=HoldState.CAPTURED,
            captured_amount=patch["captured_amount"],
        )
        self.logger.error(
            "Booking %s not confirmed after capture of %s, refunding", booking.id, handle.reference
        )
        try:
            await self.payments.refund(handle)
        except RefundFailedException as exc:
            await self._queue_discrepancy(
                booking.id, DiscrepancyOperation.REFUND, handle, handle.captured_amount, exc.message
            )

    async def _release_after_commit(self, booking: Booking) -> Booking:
        handle = PaymentHandle.from_booking(booking)
        if handle.state != HoldState.HELD:
            # accepted with a failed payment: nothing is held
            return booking
        try:
            await self.payments.release(handle)
        except ReleaseFailedException as exc:
            await self._queue_discrepancy(
                booking.id, DiscrepancyOperation.RELEASE, handle, None, exc.message
            )
            return booking

        try:
            return await self.bookings.update_with_expected_status(
                booking.id, booking.status, {"payment_status": PaymentStatus.REFUNDED}
            )
        except StaleStateException:
            # terminal statuses do not move; reload for the caller
            return await self.load(booking.id)

    async def _queue_discrepancy(
        self,
        booking_id: Optional[str],
        operation: DiscrepancyOperation,
        handle: PaymentHandle,
        amount: Optional[int],
        reason: str,
    ) -> None:
        prometheus_metrics.record_payment_discrepancy(operation.value)
        try:
            await self.reconciliation.record(
                PaymentDiscrepancy(
                    id=generate_ulid(),
                    booking_id=booking_id,
                    operation=operation,
                    payment_reference=handle.reference,
                    amount=amount,
                    reason=reason,
                )
            )
        except Exception:
            self.logger.critical(
                "Could not queue %s of %s for booking %s",
                operation.value,
                handle.reference,
                booking_id,
                exc_info=True,
            )

    @staticmethod
    def _check_compatibility(booking: Booking, patch: Mapping[str, Any]) -> None:
        status = patch.get("status", booking.status)
        payment_status = patch.get("payment_status", booking.payment_status)
        if not is_payment_compatible(status, payment_status):
            raise InvalidTransitionException(
                f"Payment status {payment_status.value} is not valid for a {status.value} booking",
                current_status=booking.status.value,
                target_status=status.value,
            )
