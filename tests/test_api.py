"""HTTP surface: headers, error envelope and a walk through the main endpoints."""

import pytest
from fastapi.testclient import TestClient

from servicebay.core.config import get_settings
from servicebay.main import app
from servicebay.models.appointment import DetailedStatus
from servicebay.schemas.actor import Role
from tests.conftest import CUSTOMER, STAFF, TECH, hours_from_now


def as_(actor):
    return {"x-actor-id": actor.id, "x-actor-role": Role(actor.role).value}


@pytest.fixture
def client(database):
    with TestClient(app) as test_client:
        yield test_client


def slot_body(hours_ahead=48, capacity=2):
    start = hours_from_now(hours_ahead)
    return {
        "start": start.isoformat(),
        "end": start.replace(minute=59).isoformat(),
        "capacity": capacity,
        "technician_ids": ["tech-1", "tech-1", "tech-2"],
    }


class TestEnvelope:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_missing_identity_is_401(self, client):
        assert client.get("/appointments").status_code == 401

    def test_unknown_role_is_400(self, client):
        response = client.get("/appointments", headers={"x-actor-id": "x", "x-actor-role": "pilot"})
        assert response.status_code == 400

    def test_api_token_enforced_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(get_settings(), "api_token", "s3cret")
        assert client.get("/slots", headers=as_(STAFF)).status_code == 401
        assert client.get("/slots", headers={**as_(STAFF), "x-api-token": "s3cret"}).status_code == 200

    def test_forbidden_action_uses_error_envelope(self, client):
        response = client.post("/slots", json=slot_body(), headers=as_(CUSTOMER))
        assert response.status_code == 403
        body = response.json()
        assert body["status"] == "error"
        assert body["error"] == "unauthorized"
        assert body["details"]["action"] == "manage_slots"

    def test_value_errors_are_400(self, client):
        assert client.post("/slots", json=slot_body(), headers=as_(STAFF)).status_code == 201
        response = client.post("/slots", json=slot_body(), headers=as_(STAFF))
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_slot_window_filter(self, client):
        assert client.get("/slots", params={"window": "tomorrow morning"}, headers=as_(STAFF)).status_code == 200
        assert client.get("/slots", params={"window": "next week"}, headers=as_(STAFF)).status_code == 200
        response = client.get("/slots", params={"window": "xyzzy"}, headers=as_(STAFF))
        assert response.status_code == 400


class TestAppointmentEndpoints:
    def test_booking_confirm_and_repeat_confirm(self, client, vehicles):
        slot = client.post("/slots", json=slot_body(), headers=as_(STAFF)).json()
        assert slot["technician_ids"] == ["tech-1", "tech-2"]

        created = client.post(
            "/appointments",
            json={
                "slot_id": slot["id"],
                "vehicle_id": "veh-1",
                "services": [{"service_id": "svc-1", "name": "Battery check", "price": 500000}],
            },
            headers=as_(CUSTOMER),
        )
        assert created.status_code == 201
        appointment = created.json()
        assert appointment["detailed_status"] == "pending_confirmation"

        confirm_url = f"/appointments/{appointment['id']}/confirm"
        confirmed = client.post(confirm_url, json={"technician_id": "tech-1"}, headers=as_(STAFF))
        assert confirmed.status_code == 200
        assert confirmed.json()["technician_id"] == "tech-1"

        again = client.post(confirm_url, headers=as_(STAFF))
        assert again.status_code == 409
        body = again.json()
        assert body["error"] == "invalid_state_transition"
        assert body["state"]["appointment"]["detailed_status"] == "confirmed"

        detail = client.get(f"/appointments/{appointment['id']}", headers=as_(TECH)).json()
        assert [entry["to_status"] for entry in detail["history"]][-1] == "confirmed"
        assert "customer_arrived" in detail["available_actions"]

    def test_full_slot_is_409(self, client, vehicles):
        slot = client.post("/slots", json=slot_body(capacity=1), headers=as_(STAFF)).json()
        body = {"slot_id": slot["id"], "vehicle_id": "veh-1"}
        assert client.post("/appointments", json=body, headers=as_(CUSTOMER)).status_code == 201
        response = client.post("/appointments", json={**body, "vehicle_id": "veh-2"}, headers=as_(CUSTOMER))
        assert response.status_code == 409
        assert response.json()["error"] == "slot_unavailable"

    def test_missing_appointment_is_404(self, client):
        assert client.get("/appointments/9999", headers=as_(STAFF)).status_code == 404


class TestInventoryEndpoints:
    def test_part_lifecycle(self, client):
        created = client.post(
            "/parts",
            json={"part_number": "bat-100", "name": "Cell pack", "category": "battery", "initial_stock": 3},
            headers=as_(STAFF),
        )
        assert created.status_code == 201
        part = created.json()
        assert part["part_number"] == "BAT-100"

        short = client.post(f"/parts/{part['id']}/reserve", json={"appointment_id": 1, "quantity": 5}, headers=as_(STAFF))
        assert short.status_code == 409
        assert short.json()["details"]["available"] == 3

        adjusted = client.post(f"/parts/{part['id']}/adjust", json={"delta": 2, "reason": "restock"}, headers=as_(STAFF))
        assert adjusted.json()["new_stock"] == 5

        reserved = client.post(f"/parts/{part['id']}/reserve", json={"appointment_id": 1, "quantity": 5}, headers=as_(STAFF))
        assert reserved.status_code == 200
        released = client.post(f"/parts/{part['id']}/release", json={"appointment_id": 1}, headers=as_(STAFF))
        assert released.json()["status"] == "cancelled"
        again = client.post(f"/parts/{part['id']}/release", json={"appointment_id": 1}, headers=as_(STAFF))
        assert again.status_code == 409
        assert again.json()["error"] == "resource_release_mismatch"

        history = client.get(f"/parts/{part['id']}/adjustments", headers=as_(STAFF)).json()
        assert [item["delta"] for item in history] == [3, 2]

    def test_zero_adjustment_fails_validation(self, client, make_part):
        part = make_part()
        response = client.post(f"/parts/{part.id}/adjust", json={"delta": 0, "reason": "x"}, headers=as_(STAFF))
        assert response.status_code == 422

    def test_conflict_endpoints(self, client, make_slot, make_part, book, advance):
        part = make_part(stock=2)
        slot = make_slot()
        advance(book(slot, vehicle_id="veh-1"), DetailedStatus.RECEPTION_SUBMITTED, part_requests=[(part.id, 3)])

        stats = client.get("/part-conflicts/stats", headers=as_(STAFF)).json()
        assert stats == {"open": 1, "resolved": 0, "total_shortfall": 1}

        [conflict] = client.get("/part-conflicts?status=open", headers=as_(STAFF)).json()
        suggestion = client.get(f"/part-conflicts/{conflict['id']}/suggestion", headers=as_(STAFF)).json()
        assert suggestion["approve"] == []

        request_id = conflict["requests"][0]["id"]
        decided = client.post(
            f"/part-conflicts/{conflict['id']}/reject", json={"request_id": request_id}, headers=as_(STAFF)
        )
        assert decided.json()["status"] == "resolved"
        assert client.get("/part-conflicts/stats", headers=as_(TECH)).status_code == 403


class TestPaymentWebhook:
    def test_webhook_confirms_payment(self, client, make_slot, book, advance, monkeypatch):
        appointment = advance(book(make_slot()), DetailedStatus.RECEPTION_APPROVED_PENDING_PAYMENT)
        monkeypatch.setattr(get_settings(), "payment_webhook_token", "hook")
        body = {"reference": appointment.payment_reference, "amount": appointment.amount_due, "provider": "bank"}

        assert client.post("/payments/webhook", json=body).status_code == 401

        response = client.post("/payments/webhook", json=body, headers={"x-payment-token": "hook"})
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["appointment"]["detailed_status"] == "in_progress"
