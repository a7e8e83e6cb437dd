# backend/carshare/services/payment_reconciler.py
"""
Out-of-band retry of payment operations that failed after their booking
transition committed (hold releases and compensating refunds).

Meant to run periodically from a scheduler; each run works through the
oldest open discrepancies once.
"""

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional

from ..core.exceptions import (
    PaymentStateException,
    RefundFailedException,
    ReleaseFailedException,
    StaleStateException,
)
from ..models.booking import PaymentStatus
from ..models.payment import DiscrepancyOperation, HoldState, PaymentDiscrepancy, PaymentHandle
from ..repositories.interfaces import BookingRepository, ReconciliationQueue
from .base import BaseService
from .payment_coordinator import PaymentCoordinator, PaymentStatusPending
from .payment_gateway import GatewayUnavailableError


@dataclass
class ReconciliationReport:
    resolved: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.resolved) + len(self.failed)


class PaymentReconciler(BaseService):
    def __init__(
        self,
        queue: ReconciliationQueue,
        payments: PaymentCoordinator,
        bookings: BookingRepository,
    ) -> None:
        super().__init__()
        self.queue = queue
        self.payments = payments
        self.bookings = bookings

    @BaseService.measure_operation("reconcile_payments")
    async def run_once(self, limit: int = 100) -> ReconciliationReport:
        report = ReconciliationReport()
        for discrepancy in await self.queue.pending(limit):
            failure = await self._retry(discrepancy)
            if failure is None:
                await self.queue.mark_resolved(discrepancy.id)
                await self._settle_booking(discrepancy)
                report.resolved.append(discrepancy.id)
            else:
                await self.queue.mark_attempted(discrepancy.id, failure)
                report.failed.append(discrepancy.id)

        if report.attempted:
            self.logger.info(
                "Reconciliation run: %d resolved, %d still failing",
                len(report.resolved),
                len(report.failed),
            )
        return report

    async def _retry(self, discrepancy: PaymentDiscrepancy) -> Optional[str]:
        """Replay the operation; returns a failure reason or None on success."""
        try:
            if discrepancy.operation == DiscrepancyOperation.RELEASE:
                await self.payments.release(
                    PaymentHandle(
                        reference=discrepancy.payment_reference,
                        amount=discrepancy.amount or 0,
                        state=HoldState.HELD,
                    )
                )
            else:
                amount = discrepancy.amount or 0
                await self.payments.refund(
                    PaymentHandle(
                        reference=discrepancy.payment_reference,
                        amount=amount,
                        state=HoldState.CAPTURED,
                        captured_amount=amount,
                    ),
                    amount,
                )
        except (ReleaseFailedException, RefundFailedException, PaymentStateException) as exc:
            if await self._already_settled(discrepancy):
                self.logger.info(
                    "%s of %s already happened, closing discrepancy",
                    discrepancy.operation.value,
                    discrepancy.payment_reference,
                )
                return None
            self.logger.warning(
                "Retry of %s for %s failed: %s",
                discrepancy.operation.value,
                discrepancy.payment_reference,
                exc.message,
            )
            return f"{exc.code}: {exc.reason or exc.message}"
        return None

    async def _already_settled(self, discrepancy: PaymentDiscrepancy) -> bool:
        """True when the gateway already shows the outcome, e.g. a hold released elsewhere."""
        settled = (
            {HoldState.RELEASED}
            if discrepancy.operation == DiscrepancyOperation.RELEASE
            else {HoldState.REFUNDED}
        )
        try:
            state = await self.payments.retrieve_status(discrepancy.payment_reference)
        except (PaymentStatusPending, GatewayUnavailableError, asyncio.TimeoutError) as exc:
            self.logger.warning("Could not look up %s: %s", discrepancy.payment_reference, exc)
            return False
        return state in settled

    async def _settle_booking(self, discrepancy: PaymentDiscrepancy) -> None:
        """A released hold on a closed booking now shows as refunded."""
        if discrepancy.operation != DiscrepancyOperation.RELEASE or not discrepancy.booking_id:
            return
        booking = await self.bookings.find(discrepancy.booking_id)
        if (
            booking is None
            or not booking.is_terminal
            or booking.payment_status != PaymentStatus.PREAUTHORIZED
            or booking.payment_reference != discrepancy.payment_reference
        ):
            return
        try:
            await self.bookings.update_with_expected_status(
                booking.id, booking.status, {"payment_status": PaymentStatus.REFUNDED}
            )
        except StaleStateException:
            self.logger.info("Booking %s changed while settling its release", booking.id)
