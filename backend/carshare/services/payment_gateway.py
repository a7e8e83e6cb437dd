# backend/carshare/services/payment_gateway.py
"""
Payment gateway port.

Gateways report definitive outcomes through ``GatewayResult`` (a decline is
``success=False`` with a reason) and raise ``GatewayUnavailableError`` when
the outcome is not known (network failure, 5xx). The coordinator owns
timeouts, state checks and the mapping to domain exceptions.

Amounts are whole currency units.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ..models.payment import HoldState


class GatewayUnavailableError(Exception):
    """The gateway could not be reached or returned an indeterminate error."""


@dataclass(frozen=True)
class GatewayResult:
    success: bool
    reference: Optional[str] = None
    amount: Optional[int] = None
    failure_reason: Optional[str] = None

    @classmethod
    def ok(cls, reference: str, amount: Optional[int] = None) -> "GatewayResult":
        return cls(success=True, reference=reference, amount=amount)

    @classmethod
    def failed(cls, reason: str, reference: Optional[str] = None) -> "GatewayResult":
        return cls(success=False, reference=reference, failure_reason=reason)


class PaymentGateway(ABC):
    """External card processor supporting manual-capture holds."""

    @abstractmethod
    async def authorize(
        self, amount: int, payer_ref: str, booking_ref: str, *, idempotency_key: str
    ) -> GatewayResult:
        """Place a hold of ``amount`` on the payer's payment method."""

    @abstractmethod
    async def capture(
        self, reference: str, amount: int, *, idempotency_key: str
    ) -> GatewayResult:
        """Convert a hold into a charge."""

    @abstractmethod
    async def release(self, reference: str, *, idempotency_key: str) -> GatewayResult:
        """Cancel a hold without charging."""

    @abstractmethod
    async def refund(
        self, reference: str, amount: int, *, idempotency_key: str
    ) -> GatewayResult:
        """Return ``amount`` of a captured charge."""

    @abstractmethod
    async def retrieve_status(self, reference: str) -> Optional[HoldState]:
        """Current state of the payment, ``None`` while still in flight. Idempotent."""
