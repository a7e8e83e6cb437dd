# backend/carshare/services/stripe_gateway.py
"""
Stripe adapter for the payment gateway port.

Holds are manual-capture PaymentIntents confirmed off-session with the
renter's saved payment method. Capture and cancel map directly to the
PaymentIntent endpoints; refunds go through ``stripe.Refund``. Every
mutating call carries the idempotency key chosen by the coordinator so a
retried request can never create a second charge.

The Stripe SDK is synchronous; calls run in a worker thread. Without a
secret key the gateway runs in mock mode and keeps intent state in memory.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import stripe

from ..constants.payment_status import map_hold_state
from ..core.config import settings
from ..core.ulid_helper import generate_ulid
from ..models.payment import HoldState
from .payment_gateway import GatewayResult, GatewayUnavailableError, PaymentGateway

logger = logging.getLogger(__name__)

# Stripe amounts are in the currency's minor unit
MINOR_UNITS_PER_UNIT = 100

_INDETERMINATE_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)


def to_minor_units(amount: int) -> int:
    return int(amount) * MINOR_UNITS_PER_UNIT


def from_minor_units(amount: Optional[int]) -> Optional[int]:
    if amount is None:
        return None
    return int(amount) // MINOR_UNITS_PER_UNIT


class StripePaymentGateway(PaymentGateway):
    def __init__(
        self,
        secret_key: Optional[str] = None,
        *,
        currency: Optional[str] = None,
        network_timeout_seconds: Optional[int] = None,
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.currency = currency or settings.stripe_currency
        key = secret_key if secret_key is not None else settings.stripe_secret_key.get_secret_value()
        self._mock_intents: Dict[str, Dict[str, Any]] = {}

        self.stripe_configured = False
        if key:
            stripe.api_key = key
            # Set sane network timeouts/retries to avoid blocking workers on Stripe calls
            try:
                stripe.default_http_client = stripe.RequestsClient(
                    timeout=network_timeout_seconds or settings.stripe_network_timeout_seconds
                )
            except Exception as e:
                # Non-fatal if client customization isn't available
                self.logger.debug(f"Stripe HTTP client customization unavailable: {e}")
            stripe.max_network_retries = 1
            self.stripe_configured = True
            self.logger.info("Stripe gateway configured successfully")
        else:
            self.logger.warning("Stripe secret key not configured - gateway will operate in mock mode")

    async def authorize(
        self, amount: int, payer_ref: str, booking_ref: str, *, idempotency_key: str
    ) -> GatewayResult:
        return await asyncio.to_thread(
            self._authorize, amount, payer_ref, booking_ref, idempotency_key
        )

    async def capture(self, reference: str, amount: int, *, idempotency_key: str) -> GatewayResult:
        return await asyncio.to_thread(self._capture, reference, amount, idempotency_key)

    async def release(self, reference: str, *, idempotency_key: str) -> GatewayResult:
        return await asyncio.to_thread(self._release, reference, idempotency_key)

    async def refund(self, reference: str, amount: int, *, idempotency_key: str) -> GatewayResult:
        return await asyncio.to_thread(self._refund, reference, amount, idempotency_key)

    async def retrieve_status(self, reference: str) -> Optional[HoldState]:
        return await asyncio.to_thread(self._retrieve_status, reference)

    # Sync Stripe calls (worker thread)

    def _authorize(
        self, amount: int, payer_ref: str, booking_ref: str, idempotency_key: str
    ) -> GatewayResult:
        if not self.stripe_configured:
            return self._mock_authorize(amount, booking_ref)
        try:
            pi = stripe.PaymentIntent.create(
                amount=to_minor_units(amount),
                currency=self.currency,
                payment_method=payer_ref,
                capture_method="manual",
                confirm=True,
                off_session=True,
                metadata={"booking_id": booking_ref, "platform": "carshare"},
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as e:
            self.logger.info(f"Card declined for booking {booking_ref}: {e.user_message}")
            return GatewayResult.failed(e.code or "card_declined")
        except _INDETERMINATE_ERRORS as e:
            self.logger.error(f"Stripe unavailable creating authorization: {str(e)}")
            raise GatewayUnavailableError(str(e)) from e
        except stripe.StripeError as e:
            self.logger.error(f"Stripe error creating authorization: {str(e)}")
            return GatewayResult.failed(str(e))

        if pi.status != "requires_capture":
            # requires_action and friends cannot complete off-session
            return GatewayResult.failed(f"unexpected_status:{pi.status}", reference=pi.id)
        return GatewayResult.ok(pi.id, amount)

    def _capture(self, reference: str, amount: int, idempotency_key: str) -> GatewayResult:
        if not self.stripe_configured:
            return self._mock_transition(reference, HoldState.HELD, HoldState.CAPTURED, amount)
        try:
            pi = stripe.PaymentIntent.capture(reference, idempotency_key=idempotency_key)
        except _INDETERMINATE_ERRORS as e:
            self.logger.error(f"Stripe unavailable capturing payment intent: {str(e)}")
            raise GatewayUnavailableError(str(e)) from e
        except stripe.StripeError as e:
            self.logger.error(f"Stripe error capturing payment intent: {str(e)}")
            return GatewayResult.failed(str(e), reference=reference)

        if pi.status != "succeeded":
            return GatewayResult.failed(f"unexpected_status:{pi.status}", reference=reference)
        received = from_minor_units(getattr(pi, "amount_received", None))
        return GatewayResult.ok(reference, received if received is not None else amount)

    def _release(self, reference: str, idempotency_key: str) -> GatewayResult:
        if not self.stripe_configured:
            return self._mock_transition(reference, HoldState.HELD, HoldState.RELEASED, None)
        try:
            pi = stripe.PaymentIntent.cancel(reference, idempotency_key=idempotency_key)
        except _INDETERMINATE_ERRORS as e:
            self.logger.error(f"Stripe unavailable canceling payment intent: {str(e)}")
            raise GatewayUnavailableError(str(e)) from e
        except stripe.StripeError as e:
            self.logger.error(f"Stripe error canceling payment intent: {str(e)}")
            return GatewayResult.failed(str(e), reference=reference)
        if pi.status != "canceled":
            return GatewayResult.failed(f"unexpected_status:{pi.status}", reference=reference)
        return GatewayResult.ok(reference)

    def _refund(self, reference: str, amount: int, idempotency_key: str) -> GatewayResult:
        if not self.stripe_configured:
            return self._mock_refund(reference, amount)
        try:
            refund = stripe.Refund.create(
                payment_intent=reference,
                amount=to_minor_units(amount),
                idempotency_key=idempotency_key,
            )
        except _INDETERMINATE_ERRORS as e:
            self.logger.error(f"Stripe unavailable creating refund: {str(e)}")
            raise GatewayUnavailableError(str(e)) from e
        except stripe.StripeError as e:
            self.logger.error(f"Stripe error creating refund: {str(e)}")
            return GatewayResult.failed(str(e), reference=reference)
        if refund.status in ("failed", "canceled"):
            return GatewayResult.failed(refund.failure_reason or refund.status, reference=reference)
        return GatewayResult.ok(reference, from_minor_units(refund.amount))

    def _retrieve_status(self, reference: str) -> Optional[HoldState]:
        if not self.stripe_configured:
            intent = self._mock_intents.get(reference)
            return intent["state"] if intent else None
        try:
            pi = stripe.PaymentIntent.retrieve(reference)
        except stripe.StripeError as e:
            self.logger.warning(f"Stripe error retrieving payment intent {reference}: {str(e)}")
            raise GatewayUnavailableError(str(e)) from e
        return map_hold_state(pi.status)

    # Mock mode

    def _mock_authorize(self, amount: int, booking_ref: str) -> GatewayResult:
        reference = f"pi_mock_{generate_ulid()}"
        self._mock_intents[reference] = {
            "state": HoldState.HELD,
            "amount": amount,
            "refunded": 0,
            "booking_id": booking_ref,
        }
        self.logger.info(f"[MOCK] Authorized {amount} {self.currency} for booking {booking_ref}")
        return GatewayResult.ok(reference, amount)

    def _mock_transition(
        self, reference: str, expected: HoldState, target: HoldState, amount: Optional[int]
    ) -> GatewayResult:
        intent = self._mock_intents.get(reference)
        if intent is None or intent["state"] != expected:
            return GatewayResult.failed("invalid_state", reference=reference)
        intent["state"] = target
        return GatewayResult.ok(reference, amount)

    def _mock_refund(self, reference: str, amount: int) -> GatewayResult:
        intent = self._mock_intents.get(reference)
        if intent is None or intent["state"] != HoldState.CAPTURED:
            return GatewayResult.failed("invalid_state", reference=reference)
        if intent["refunded"] + amount > intent["amount"]:
            return GatewayResult.failed("amount_too_large", reference=reference)
        intent["refunded"] += amount
        return GatewayResult.ok(reference, amount)
