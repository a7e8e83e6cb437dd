# backend/carshare/services/payment_coordinator.py
"""
Payment protocol over a PaymentGateway.

Handle lifecycle::

    held --capture--> captured --refund--> partially_refunded --refund--> refunded
      \\--release--> released

From ``held`` exactly one of capture or release may succeed. Refunds are
only possible on captured money and never exceed it. Any call that does not
fit the handle's state raises PaymentStateException without contacting the
gateway.

The coordinator remembers the last known state of every reference it has
moved, so a stale copy of a handle (for example one rebuilt from a booking
loaded before a concurrent release) is checked against that state rather
than its own.

Charge-creating calls (authorize, capture, refund) are never retried here.
Only the idempotent status lookup is retried, with exponential backoff.
"""

import asyncio
from collections import OrderedDict
from functools import wraps
import logging
from typing import Awaitable, Callable, Optional, ParamSpec, TypeVar

from ..core.config import settings
from ..core.exceptions import (
    CaptureFailedException,
    CaptureStatusUnknownException,
    PaymentDeclinedException,
    PaymentStateException,
    RefundFailedException,
    ReleaseFailedException,
    ValidationException,
)
from ..core.ulid_helper import generate_ulid
from ..models.payment import HoldState, PaymentHandle
from ..monitoring.prometheus_metrics import prometheus_metrics
from .base import BaseService
from .payment_gateway import GatewayUnavailableError, PaymentGateway

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")

# most recently touched references kept in the state ledger
MAX_TRACKED_HANDLES = 10_000


class PaymentStatusPending(Exception):
    """The gateway has not settled on an outcome yet."""


def retry(
    max_attempts: int = 3, backoff_seconds: float = 1.0
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """
    Decorator for retrying failed operations with exponential backoff.

    Only for idempotent reads; never wrap a call that moves money.
    """

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            last_exception: Exception | None = None

            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    last_exception = e
                    if attempt < max_attempts - 1:
                        wait_time = backoff_seconds * (2**attempt)
                        logger.warning(
                            f"Attempt {attempt + 1}/{max_attempts} failed for {func.__name__}: {str(e)}. "
                            f"Retrying in {wait_time}s..."
                        )
                        await asyncio.sleep(wait_time)
                    else:
                        logger.error(
                            f"All {max_attempts} attempts failed for {func.__name__}: {str(e)}"
                        )

            if last_exception is not None:
                raise last_exception
            raise RuntimeError("Retry failed without capturing exception")

        return wrapper

    return decorator


class PaymentCoordinator(BaseService):
    def __init__(
        self,
        gateway: PaymentGateway,
        *,
        authorize_timeout: Optional[float] = None,
        capture_timeout: Optional[float] = None,
        release_timeout: Optional[float] = None,
        poll_attempts: Optional[int] = None,
        poll_backoff_seconds: Optional[float] = None,
    ) -> None:
        super().__init__()
        self.gateway = gateway
        self.authorize_timeout = authorize_timeout or settings.payment_authorize_timeout_seconds
        self.capture_timeout = capture_timeout or settings.payment_capture_timeout_seconds
        self.release_timeout = release_timeout or settings.payment_release_timeout_seconds
        self.poll_attempts = poll_attempts or settings.payment_status_poll_attempts
        self.poll_backoff_seconds = (
            settings.payment_status_poll_backoff_seconds
            if poll_backoff_seconds is None
            else poll_backoff_seconds
        )
        self._handles: "OrderedDict[str, PaymentHandle]" = OrderedDict()

    @BaseService.measure_operation("payment_authorize")
    async def authorize(self, amount: int, payer_ref: str, booking_ref: str) -> PaymentHandle:
        """
        Place a hold for ``amount``.

        A timeout or an unreachable gateway counts as a decline: the caller
        creates no booking.
        """
        if amount <= 0:
            raise ValidationException("Amount to authorize must be positive", code="INVALID_AMOUNT")

        try:
            result = await asyncio.wait_for(
                self.gateway.authorize(
                    amount,
                    payer_ref,
                    booking_ref,
                    idempotency_key=f"authorize:{booking_ref}:{generate_ulid()}",
                ),
                timeout=self.authorize_timeout,
            )
        except asyncio.TimeoutError as e:
            prometheus_metrics.record_payment_operation("authorize", "timeout")
            self.logger.warning("Authorization timed out for booking %s", booking_ref)
            raise PaymentDeclinedException("timeout") from e
        except GatewayUnavailableError as e:
            prometheus_metrics.record_payment_operation("authorize", "failed")
            raise PaymentDeclinedException(f"gateway_unavailable: {e}") from e

        if not result.success or not result.reference:
            prometheus_metrics.record_payment_operation("authorize", "declined")
            raise PaymentDeclinedException(
                result.failure_reason, payment_reference=result.reference
            )

        prometheus_metrics.record_payment_operation("authorize", "success")
        return self._remember(
            PaymentHandle(reference=result.reference, amount=amount, state=HoldState.HELD)
        )

    @BaseService.measure_operation("payment_capture")
    async def capture(self, handle: PaymentHandle) -> PaymentHandle:
        """
        Convert a hold into a charge.

        On timeout the outcome is established by polling the gateway; unless
        the poll confirms the charge, CaptureStatusUnknownException is raised
        and the caller must not treat the booking as paid.
        """
        handle = self._require_state(handle, "capture", HoldState.HELD)

        try:
            result = await asyncio.wait_for(
                self.gateway.capture(
                    handle.reference, handle.amount, idempotency_key=f"capture:{handle.reference}"
                ),
                timeout=self.capture_timeout,
            )
        except (asyncio.TimeoutError, GatewayUnavailableError) as e:
            prometheus_metrics.record_payment_operation("capture", "timeout")
            self.logger.warning(
                "Capture outcome unknown for %s (%s), polling status", handle.reference, e
            )
            return await self._resolve_capture(handle)

        if not result.success:
            prometheus_metrics.record_payment_operation("capture", "failed")
            raise CaptureFailedException(result.failure_reason, payment_reference=handle.reference)

        prometheus_metrics.record_payment_operation("capture", "success")
        return self._remember(self._captured(handle, result.amount))

    @BaseService.measure_operation("payment_release")
    async def release(self, handle: PaymentHandle) -> PaymentHandle:
        handle = self._require_state(handle, "release", HoldState.HELD)

        try:
            result = await asyncio.wait_for(
                self.gateway.release(handle.reference, idempotency_key=f"release:{handle.reference}"),
                timeout=self.release_timeout,
            )
        except asyncio.TimeoutError as e:
            prometheus_metrics.record_payment_operation("release", "timeout")
            raise ReleaseFailedException("timeout", payment_reference=handle.reference) from e
        except GatewayUnavailableError as e:
            prometheus_metrics.record_payment_operation("release", "failed")
            raise ReleaseFailedException(str(e), payment_reference=handle.reference) from e

        if not result.success:
            prometheus_metrics.record_payment_operation("release", "failed")
            raise ReleaseFailedException(result.failure_reason, payment_reference=handle.reference)

        prometheus_metrics.record_payment_operation("release", "success")
        return self._remember(handle.model_copy(update={"state": HoldState.RELEASED}))

    @BaseService.measure_operation("payment_refund")
    async def refund(self, handle: PaymentHandle, amount: Optional[int] = None) -> PaymentHandle:
        """Refund ``amount`` (default: everything still refundable) of a captured charge."""
        handle = self._require_state(
            handle, "refund", HoldState.CAPTURED, HoldState.PARTIALLY_REFUNDED
        )

        refundable = handle.refundable_amount
        amount = refundable if amount is None else amount
        if amount <= 0 or amount > refundable:
            raise ValidationException(
                f"Refund amount must be between 1 and {refundable}",
                code="INVALID_REFUND_AMOUNT",
                details={"requested": amount, "refundable": refundable},
            )

        try:
            result = await asyncio.wait_for(
                self.gateway.refund(
                    handle.reference,
                    amount,
                    idempotency_key=f"refund:{handle.reference}:{handle.refunded_amount}:{amount}",
                ),
                timeout=self.release_timeout,
            )
        except asyncio.TimeoutError as e:
            prometheus_metrics.record_payment_operation("refund", "timeout")
            raise RefundFailedException("timeout", payment_reference=handle.reference) from e
        except GatewayUnavailableError as e:
            prometheus_metrics.record_payment_operation("refund", "failed")
            raise RefundFailedException(str(e), payment_reference=handle.reference) from e

        if not result.success:
            prometheus_metrics.record_payment_operation("refund", "failed")
            raise RefundFailedException(result.failure_reason, payment_reference=handle.reference)

        prometheus_metrics.record_payment_operation("refund", "success")
        refunded = handle.refunded_amount + amount
        state = (
            HoldState.REFUNDED if refunded >= handle.captured_amount else HoldState.PARTIALLY_REFUNDED
        )
        return self._remember(
            handle.model_copy(update={"state": state, "refunded_amount": refunded})
        )

    async def retrieve_status(self, reference: str) -> HoldState:
        """Settled state of a payment, polled with backoff while in flight."""

        @retry(max_attempts=self.poll_attempts, backoff_seconds=self.poll_backoff_seconds)
        async def poll_payment_status() -> HoldState:
            state = await asyncio.wait_for(
                self.gateway.retrieve_status(reference), timeout=self.capture_timeout
            )
            if state is None:
                raise PaymentStatusPending(reference)
            return state

        return await poll_payment_status()

    async def _resolve_capture(self, handle: PaymentHandle) -> PaymentHandle:
        try:
            state = await self.retrieve_status(handle.reference)
        except (PaymentStatusPending, GatewayUnavailableError, asyncio.TimeoutError) as e:
            raise CaptureStatusUnknownException(payment_reference=handle.reference) from e

        if state == HoldState.CAPTURED:
            self.logger.info("Status poll confirmed capture of %s", handle.reference)
            return self._remember(self._captured(handle, None))
        if state == HoldState.RELEASED:
            self._remember(handle.model_copy(update={"state": HoldState.RELEASED}))
        if state in (HoldState.FAILED, HoldState.RELEASED):
            raise CaptureFailedException(state.value, payment_reference=handle.reference)
        raise CaptureStatusUnknownException(payment_reference=handle.reference)

    @staticmethod
    def _captured(handle: PaymentHandle, amount: Optional[int]) -> PaymentHandle:
        captured = amount if amount is not None else handle.amount
        return handle.model_copy(update={"state": HoldState.CAPTURED, "captured_amount": captured})

    def _remember(self, handle: PaymentHandle) -> PaymentHandle:
        self._handles[handle.reference] = handle
        self._handles.move_to_end(handle.reference)
        while len(self._handles) > MAX_TRACKED_HANDLES:
            self._handles.popitem(last=False)
        return handle

    def _require_state(
        self, handle: PaymentHandle, operation: str, *allowed: HoldState
    ) -> PaymentHandle:
        """Returns the freshest known copy of ``handle`` if it allows ``operation``."""
        current = self._handles.get(handle.reference, handle)
        if current.state not in allowed:
            prometheus_metrics.record_payment_operation(operation, "invalid_state")
            raise PaymentStateException(
                operation, current.state.value, payment_reference=handle.reference
            )
        return current


__all__ = ["PaymentCoordinator", "PaymentStatusPending", "retry"]
