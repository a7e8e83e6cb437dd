"""Scriptable test doubles for the payment gateway, notification sink and booking store."""

from __future__ import annotations

import asyncio
from datetime import date
import itertools
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from carshare.core.enums import InsuranceTier, VehicleStatus
from carshare.models.booking import Booking, BookingStatus, PaymentStatus
from carshare.models.payment import HoldState
from carshare.models.vehicle import DepositPolicy, Vehicle
from carshare.repositories.memory import InMemoryBookingRepository
from carshare.services.notification_sink import NotificationSink
from carshare.services.payment_gateway import (
    GatewayResult,
    GatewayUnavailableError,
    PaymentGateway,
)

OWNER_ID = "owner-1"
RENTER_ID = "renter-1"
OTHER_RENTER_ID = "renter-2"
SUPPORT_ID = "support-1"
VEHICLE_ID = "veh-1"

_booking_ids = itertools.count(1)


class FakePaymentGateway(PaymentGateway):
    """
    In-memory gateway.

    Failures are scripted per operation name ("authorize", "capture",
    "release", "refund", "retrieve_status"):

    - ``declines[op] = reason`` returns a definitive failure
    - ``unavailable`` raises GatewayUnavailableError
    - ``hangs`` never answers (the coordinator times out)
    - ``apply_before_hang`` applies the operation before hanging, like a
      gateway that charged but whose response was lost
    """

    def __init__(self) -> None:
        self.intents: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str, Optional[str]]] = []
        self.declines: Dict[str, str] = {}
        self.unavailable: Set[str] = set()
        self.hangs: Set[str] = set()
        self.apply_before_hang: Set[str] = set()
        self.status_overrides: Dict[str, Optional[HoldState]] = {}
        self._references = itertools.count(1)

    def ops(self, name: str) -> List[Tuple[str, str, Optional[str]]]:
        return [call for call in self.calls if call[0] == name]

    def state(self, reference: str) -> HoldState:
        return self.intents[reference]["state"]

    async def _script(self, op: str) -> None:
        if op in self.hangs:
            await asyncio.sleep(3600)
        if op in self.unavailable:
            raise GatewayUnavailableError(f"{op} unavailable")

    async def authorize(
        self, amount: int, payer_ref: str, booking_ref: str, *, idempotency_key: str
    ) -> GatewayResult:
        self.calls.append(("authorize", booking_ref, idempotency_key))
        await self._script("authorize")
        if "authorize" in self.declines:
            return GatewayResult.failed(self.declines["authorize"])
        reference = f"pi_fake_{next(self._references)}"
        self.intents[reference] = {
            "state": HoldState.HELD,
            "amount": amount,
            "refunded": 0,
            "payer": payer_ref,
        }
        return GatewayResult.ok(reference, amount)

    async def capture(self, reference: str, amount: int, *, idempotency_key: str) -> GatewayResult:
        self.calls.append(("capture", reference, idempotency_key))
        if "capture" in self.apply_before_hang:
            self.intents[reference]["state"] = HoldState.CAPTURED
        await self._script("capture")
        if "capture" in self.declines:
            return GatewayResult.failed(self.declines["capture"], reference=reference)
        intent = self.intents.get(reference)
        if intent is None or intent["state"] != HoldState.HELD:
            return GatewayResult.failed("invalid_state", reference=reference)
        intent["state"] = HoldState.CAPTURED
        return GatewayResult.ok(reference, amount)

    async def release(self, reference: str, *, idempotency_key: str) -> GatewayResult:
        self.calls.append(("release", reference, idempotency_key))
        await self._script("release")
        if "release" in self.declines:
            return GatewayResult.failed(self.declines["release"], reference=reference)
        intent = self.intents.get(reference)
        if intent is None or intent["state"] != HoldState.HELD:
            return GatewayResult.failed("invalid_state", reference=reference)
        intent["state"] = HoldState.RELEASED
        return GatewayResult.ok(reference)

    async def refund(self, reference: str, amount: int, *, idempotency_key: str) -> GatewayResult:
        self.calls.append(("refund", reference, idempotency_key))
        await self._script("refund")
        if "refund" in self.declines:
            return GatewayResult.failed(self.declines["refund"], reference=reference)
        intent = self.intents.get(reference)
        if intent is None or intent["state"] not in (
            HoldState.CAPTURED,
            HoldState.PARTIALLY_REFUNDED,
        ):
            return GatewayResult.failed("invalid_state", reference=reference)
        intent["refunded"] += amount
        intent["state"] = (
            HoldState.REFUNDED
            if intent["refunded"] >= intent["amount"]
            else HoldState.PARTIALLY_REFUNDED
        )
        return GatewayResult.ok(reference, amount)

    async def retrieve_status(self, reference: str) -> Optional[HoldState]:
        self.calls.append(("retrieve_status", reference, None))
        await self._script("retrieve_status")
        if reference in self.status_overrides:
            return self.status_overrides[reference]
        intent = self.intents.get(reference)
        return intent["state"] if intent else None


class RecordingNotificationSink(NotificationSink):
    def __init__(self, *, fail_for: Optional[Set[str]] = None) -> None:
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []
        self.fail_for = fail_for or set()

    async def notify(self, user_id: str, event_type: str, payload: Mapping[str, Any]) -> None:
        if user_id in self.fail_for:
            raise RuntimeError(f"push to {user_id} failed")
        self.sent.append((user_id, event_type, dict(payload)))

    def for_user(self, user_id: str) -> List[str]:
        return [event_type for recipient, event_type, _ in self.sent if recipient == user_id]


class FailingBookingRepository(InMemoryBookingRepository):
    """
    In-memory store whose writes can be made to fail or stall.

    ``find_gate`` pauses the next lookup after it has read the row, so the
    caller goes on with a snapshot that a concurrent transition can outdate.
    """

    def __init__(self) -> None:
        super().__init__()
        self.insert_error: Optional[Exception] = None
        self.update_errors: Dict[BookingStatus, Exception] = {}
        self.insert_gate: Optional[asyncio.Event] = None
        self.insert_started = asyncio.Event()
        self.inserts_waiting = 0
        self.find_gate: Optional[asyncio.Event] = None
        self.finds_waiting = 0

    async def find(self, booking_id: str) -> Optional[Booking]:
        booking = await super().find(booking_id)
        gate, self.find_gate = self.find_gate, None
        if gate is not None:
            self.finds_waiting += 1
            await gate.wait()
        return booking

    async def insert(self, booking: Booking) -> Booking:
        self.insert_started.set()
        if self.insert_gate is not None:
            self.inserts_waiting += 1
            await self.insert_gate.wait()
        if self.insert_error is not None:
            raise self.insert_error
        return await super().insert(booking)

    async def update_with_expected_status(
        self, booking_id: str, expected_status: BookingStatus, patch: Mapping[str, Any]
    ) -> Booking:
        target = patch.get("status")
        if target in self.update_errors:
            raise self.update_errors[target]
        return await super().update_with_expected_status(booking_id, expected_status, patch)


def make_vehicle(
    vehicle_id: str = VEHICLE_ID,
    *,
    owner_id: str = OWNER_ID,
    daily_rate: int = 250,
    deposit: Optional[int] = None,
    status: VehicleStatus = VehicleStatus.AVAILABLE,
) -> Vehicle:
    return Vehicle(
        id=vehicle_id,
        owner_id=owner_id,
        daily_rate=daily_rate,
        deposit_policy=DepositPolicy(amount=deposit),
        status=status,
    )


def make_booking(
    *,
    start: date = date(2024, 3, 10),
    end: date = date(2024, 3, 15),
    status: BookingStatus = BookingStatus.PENDING,
    payment_status: PaymentStatus = PaymentStatus.PREAUTHORIZED,
    vehicle_id: str = VEHICLE_ID,
    renter_id: str = RENTER_ID,
    owner_id: str = OWNER_ID,
    **overrides: Any,
) -> Booking:
    days = max(1, (end - start).days)
    fields: Dict[str, Any] = dict(
        id=f"01HBOOKING{next(_booking_ids):016d}",
        vehicle_id=vehicle_id,
        renter_id=renter_id,
        owner_id=owner_id,
        start_date=start,
        end_date=end,
        duration_days=days,
        pickup_location="Main St 1",
        return_location="Main St 1",
        insurance_tier=InsuranceTier.BASIC,
        daily_rate=250,
        base_price=250 * days,
        insurance_fee=50 * days,
        service_fee=25 * days,
        total_amount=325 * days,
        deposit_amount=75 * days,
        status=status,
        payment_status=payment_status,
        payment_reference="pi_seeded",
    )
    fields.update(overrides)
    return Booking(**fields)


CHECKLIST: Dict[str, Any] = {
    "fuel_level": 80,
    "odometer_reading": 42000,
    "exterior": {"scratches": False},
    "damages": [],
    "cleanliness_rating": 5,
}
