import pytest

from carshare.core.exceptions import (
    CaptureFailedException,
    CaptureStatusUnknownException,
    DomainException,
    InvalidTransitionException,
    PaymentDeclinedException,
    PaymentStateException,
    PersistenceException,
    StaleStateException,
    ValidationException,
    VehicleUnavailableException,
)


@pytest.mark.parametrize(
    "exc, status_code, retryable",
    [
        (ValidationException("bad dates"), 400, False),
        (VehicleUnavailableException("veh-1"), 409, False),
        (InvalidTransitionException("nope"), 422, False),
        (StaleStateException("B1", "pending", "accepted"), 409, True),
        (PaymentDeclinedException("card_declined"), 402, False),
        (CaptureFailedException("card_expired"), 502, False),
        (CaptureStatusUnknownException(), 502, True),
        (PaymentStateException("capture", "released"), 409, False),
        (PersistenceException(), 503, True),
    ],
)
def test_status_and_retryable(exc, status_code, retryable):
    assert exc.status_code == status_code
    assert exc.retryable is retryable


def test_http_exception_carries_code_details_and_retryable():
    exc = VehicleUnavailableException(
        "veh-1",
        alternatives=[{"start_date": "2024-03-16", "end_date": "2024-03-20"}],
        conflicting_booking_ids=["B1"],
    )

    http_exc = exc.to_http_exception()

    assert http_exc.status_code == 409
    assert http_exc.detail["code"] == "VEHICLE_UNAVAILABLE"
    assert http_exc.detail["retryable"] is False
    assert http_exc.detail["details"]["alternatives"][0]["start_date"] == "2024-03-16"
    assert http_exc.detail["details"]["conflicting_booking_ids"] == ["B1"]


def test_code_defaults_to_class_name():
    assert DomainException("boom").code == "DomainException"


def test_payment_exceptions_expose_reason_and_reference():
    exc = PaymentDeclinedException("insufficient_funds", payment_reference="pi_1")
    assert exc.reason == "insufficient_funds"
    assert exc.payment_reference == "pi_1"
    assert exc.details == {"payment_reference": "pi_1", "reason": "insufficient_funds"}
