"""
HTTP surface of the booking engine.

The app runs the in-memory service from conftest; actors are passed in the
X-Actor-Id / X-Actor-Role headers the upstream gateway would set.
"""

from fastapi.testclient import TestClient
import pytest

from carshare.main import create_app
from tests.helpers.fakes import CHECKLIST, OTHER_RENTER_ID, OWNER_ID, RENTER_ID, SUPPORT_ID

BASE = "/api/v1/bookings"
RENTER = {"X-Actor-Id": RENTER_ID, "X-Actor-Role": "renter"}
OTHER_RENTER = {"X-Actor-Id": OTHER_RENTER_ID, "X-Actor-Role": "renter"}
OWNER = {"X-Actor-Id": OWNER_ID, "X-Actor-Role": "owner"}
SUPPORT = {"X-Actor-Id": SUPPORT_ID, "X-Actor-Role": "support"}

UNKNOWN_ULID = "01HF4G12ABCDEF3456789XYZAB"


@pytest.fixture
def client(booking_service):
    app = create_app(booking_service, start_background_jobs=False)
    with TestClient(app) as test_client:
        yield test_client


def _request_body(**overrides):
    body = {
        "vehicle_id": "veh-1",
        "start_date": "2024-03-10",
        "end_date": "2024-03-13",
        "pickup_location": "Main St 1",
        "return_location": "Main St 1",
        "payment_method": "pm_card_visa",
    }
    body.update(overrides)
    return body


def _create(client, headers=RENTER, **overrides):
    response = client.post(f"{BASE}/", json=_request_body(**overrides), headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def _post(client, booking_id, action, headers, json=None):
    return client.post(f"{BASE}/{booking_id}/{action}", json=json, headers=headers)


def _confirmed(client):
    booking = _create(client)
    assert _post(client, booking["id"], "accept", OWNER).status_code == 200
    response = _post(client, booking["id"], "confirm", RENTER)
    assert response.status_code == 200, response.text
    return response.json()


class TestQuoteAndAvailability:
    def test_quote(self, client):
        response = client.post(
            f"{BASE}/quote",
            json={"vehicle_id": "veh-1", "start_date": "2024-03-10", "end_date": "2024-03-13"},
            headers=RENTER,
        )
        assert response.status_code == 200
        assert response.json() == {
            "duration_days": 3,
            "daily_rate": 250,
            "base_price": 750,
            "insurance_tier": "basic",
            "insurance_fee": 150,
            "service_fee": 75,
            "total_amount": 975,
            "deposit_amount": 225,
        }

    def test_availability_with_alternatives(self, client):
        _create(client, start_date="2024-03-10", end_date="2024-03-15")

        response = client.post(
            f"{BASE}/availability",
            json={"vehicle_id": "veh-1", "start_date": "2024-03-14", "end_date": "2024-03-18"},
            headers=OTHER_RENTER,
        )

        body = response.json()
        assert response.status_code == 200
        assert body["is_available"] is False
        assert body["alternatives"][0] == {"start_date": "2024-03-16", "end_date": "2024-03-20"}

    def test_inverted_dates_fail_validation(self, client):
        response = client.post(
            f"{BASE}/availability",
            json={"vehicle_id": "veh-1", "start_date": "2024-03-18", "end_date": "2024-03-14"},
            headers=RENTER,
        )
        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"


class TestCreate:
    def test_created_request_hides_gateway_reference(self, client):
        booking = _create(client)

        assert booking["status"] == "pending"
        assert booking["payment_status"] == "preauthorized"
        assert booking["total_amount"] == 975
        assert "payment_reference" not in booking

    def test_overlap_returns_conflict_with_alternatives(self, client):
        _create(client, start_date="2024-03-10", end_date="2024-03-15")

        response = client.post(
            f"{BASE}/",
            json=_request_body(start_date="2024-03-14", end_date="2024-03-18"),
            headers=OTHER_RENTER,
        )

        body = response.json()
        assert response.status_code == 409
        assert body["code"] == "VEHICLE_UNAVAILABLE"
        assert body["retryable"] is False
        assert body["errors"]["alternatives"][0]["start_date"] == "2024-03-16"

    def test_declined_payment(self, client, gateway):
        gateway.declines["authorize"] = "card_declined"
        response = client.post(f"{BASE}/", json=_request_body(), headers=RENTER)
        assert response.status_code == 402
        assert response.json()["code"] == "PAYMENT_DECLINED"

    def test_unknown_field_is_rejected(self, client):
        response = client.post(f"{BASE}/", json=_request_body(colour="red"), headers=RENTER)
        assert response.status_code == 422


class TestActorHeaders:
    def test_missing_headers(self, client):
        response = client.get(f"{BASE}/")
        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"

    def test_system_role_is_forbidden(self, client):
        response = client.get(f"{BASE}/", headers={"X-Actor-Id": "cron", "X-Actor-Role": "system"})
        assert response.status_code == 403
        assert response.json()["code"] == "SYSTEM_ACTOR_FORBIDDEN"

    def test_unknown_role(self, client):
        response = client.get(f"{BASE}/", headers={"X-Actor-Id": "x", "X-Actor-Role": "admin"})
        assert response.status_code == 400


class TestReads:
    def test_get_and_list(self, client):
        booking = _create(client)

        assert client.get(f"{BASE}/{booking['id']}", headers=OWNER).json()["id"] == booking["id"]

        mine = client.get(f"{BASE}/", headers=RENTER).json()
        assert mine["total"] == 1
        as_owner = client.get(f"{BASE}/", params={"status": "pending"}, headers=OWNER).json()
        assert [item["id"] for item in as_owner["items"]] == [booking["id"]]
        assert client.get(f"{BASE}/", params={"status": "confirmed"}, headers=OWNER).json()["total"] == 0

    def test_stranger_cannot_read(self, client):
        booking = _create(client)
        response = client.get(f"{BASE}/{booking['id']}", headers=OTHER_RENTER)
        assert response.status_code == 403

    def test_support_listing_needs_role(self, client):
        response = client.get(f"{BASE}/", headers=SUPPORT)
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_LIST_ROLE"

    def test_malformed_id(self, client):
        assert client.get(f"{BASE}/not-a-ulid", headers=RENTER).status_code == 422

    def test_unknown_id(self, client):
        assert client.get(f"{BASE}/{UNKNOWN_ULID}", headers=RENTER).status_code == 404


class TestLifecycle:
    def test_full_rental(self, client, sink):
        booking = _confirmed(client)
        booking_id = booking["id"]
        assert booking["status"] == "confirmed"
        assert booking["payment_status"] == "charged"
        assert booking["captured_amount"] == 975

        assert _post(client, booking_id, "share-contact", RENTER).json()["contact_shared"] is True
        _post(client, booking_id, "ready", OWNER)
        ready = _post(client, booking_id, "ready", RENTER).json()
        assert ready["owner_ready_for_pickup"] and ready["renter_ready_for_pickup"]

        checklist = {"checklist": CHECKLIST, "photos": ["https://img/p1.jpg"]}
        picked_up = _post(client, booking_id, "pickup", RENTER, json=checklist)
        assert picked_up.status_code == 200, picked_up.text
        assert picked_up.json()["status"] == "in_progress"
        assert picked_up.json()["pickup_checklist"]["odometer_reading"] == 42000

        returned = _post(client, booking_id, "return", OWNER, json=checklist)
        assert returned.json()["status"] == "in_progress"
        assert returned.json()["return_recorded_at"] is not None

        completed = _post(client, booking_id, "complete", OWNER)
        assert completed.json()["status"] == "completed"
        assert "booking_complete" in sink.for_user(RENTER_ID)

    def test_reject_releases_hold(self, client, gateway):
        booking = _create(client)

        response = _post(client, booking["id"], "reject", OWNER, json={"reason": "car in the shop"})

        assert response.status_code == 200
        assert response.json()["status"] == "rejected"
        assert response.json()["payment_status"] == "refunded"
        assert len(gateway.ops("release")) == 1

    def test_cancel_without_body(self, client):
        booking = _create(client)
        response = _post(client, booking["id"], "cancel", RENTER)
        assert response.json()["status"] == "cancelled"
        assert response.json()["cancelled_by"] == RENTER_ID

    def test_owner_cannot_confirm(self, client):
        booking = _create(client)
        _post(client, booking["id"], "accept", OWNER)

        response = _post(client, booking["id"], "confirm", OWNER)

        assert response.status_code in (403, 422)

    def test_invalid_transition(self, client):
        booking = _create(client)
        response = _post(client, booking["id"], "complete", OWNER)
        assert response.status_code == 422
        assert response.json()["code"] == "INVALID_TRANSITION"

    def test_dispute_requires_reason(self, client):
        booking = _confirmed(client)
        assert _post(client, booking["id"], "dispute", RENTER, json={}).status_code == 422

        response = _post(client, booking["id"], "dispute", RENTER, json={"reason": "no keys at pickup"})
        assert response.json()["status"] == "disputed"
        assert response.json()["dispute_reason"] == "no keys at pickup"

    def test_support_refund(self, client):
        booking = _confirmed(client)
        _post(client, booking["id"], "dispute", RENTER, json={"reason": "no keys at pickup"})

        partial = _post(client, booking["id"], "refund", SUPPORT, json={"amount": 100})
        assert partial.status_code == 200, partial.text
        assert partial.json()["payment_status"] == "partial_refund"
        assert partial.json()["refunded_amount"] == 100

        full = _post(client, booking["id"], "refund", SUPPORT)
        assert full.json()["payment_status"] == "refunded"
        assert full.json()["refunded_amount"] == 975

    def test_renter_cannot_refund(self, client):
        booking = _confirmed(client)
        assert _post(client, booking["id"], "refund", RENTER).status_code == 403


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "healthy"
    assert body["service"] == "carshare-api"
    assert body["timestamp"].endswith("Z")


def test_metrics(client):
    _create(client)
    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "carshare_service_operations_total" in response.text
