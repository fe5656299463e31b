"""Scheduling webhook ingestion and guarded booking transitions."""

import json
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from conftest import API_KEY, cal_headers, seed_payment
from mentorsaga.common.errors import InvariantViolation
from mentorsaga.services.scheduling import main
from mentorsaga.services.scheduling.models import BookingRecord, BookingTimeline
from mentorsaga.services.scheduling.service import BookingWebhookService

START = datetime(2030, 1, 15, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def service(session_factory):
    return BookingWebhookService(session_factory)


@pytest.fixture
def client(service, monkeypatch):
    monkeypatch.setattr(main, "service", service)
    return TestClient(main.app)


def created_event(booking_id: int = 101, uid: str = "uid-101", payment_id: str | None = None, price: int = 50) -> dict:
    metadata = {"paymentId": payment_id} if payment_id else {}
    return {
        "triggerEvent": "BOOKING_CREATED",
        "createdAt": "2030-01-10T12:00:00Z",
        "payload": {
            "bookingId": booking_id,
            "uid": uid,
            "title": "Mentorship session",
            "startTime": START.isoformat(),
            "endTime": (START + timedelta(minutes=30)).isoformat(),
            "eventTypeId": 42,
            "organizer": {"name": "Grace", "email": "grace@example.com", "timeZone": "UTC"},
            "attendees": [{"name": "Ada", "email": "ada@example.com", "timeZone": "America/New_York"}],
            "metadata": metadata,
            "price": price,
        },
    }


def _post(client, event: dict, headers: dict | None = None):
    body = json.dumps(event).encode()
    return client.post("/webhooks/scheduling", content=body, headers=headers or cal_headers(body))


def test_booking_for_settled_payment_is_confirmed(client, session_factory):
    payment = seed_payment(session_factory)

    resp = _post(client, created_event(payment_id=payment.id))

    assert resp.status_code == 201
    assert resp.json()["status"] == "CONFIRMED"
    with session_factory() as db:
        booking = db.execute(select(BookingRecord)).scalar_one()
        timeline = db.execute(select(BookingTimeline.to_state)).scalars().all()
    assert booking.payment_ref == payment.id
    assert booking.attendees[0]["email"] == "ada@example.com"
    assert sorted(timeline) == ["CONFIRMED", "PENDING_PAYMENT"]


def test_replayed_booking_created_is_idempotent(client, session_factory):
    payment = seed_payment(session_factory)
    event = created_event(payment_id=payment.id)

    assert _post(client, event).status_code == 201
    replay = _post(client, event)

    assert replay.status_code == 200
    assert replay.json()["replayed"] is True
    with session_factory() as db:
        assert db.execute(select(func.count()).select_from(BookingRecord)).scalar_one() == 1


def test_paid_booking_without_payment_is_rejected(client):
    resp = _post(client, created_event(payment_id=None, price=50))

    assert resp.status_code == 201
    assert resp.json()["status"] == "REJECTED"


def test_unknown_payment_id_is_kept_on_the_rejection(client, session_factory):
    resp = _post(client, created_event(payment_id="pay-missing"))

    assert resp.json()["status"] == "REJECTED"
    with session_factory() as db:
        booking = db.execute(select(BookingRecord)).scalar_one()
        reason = db.execute(
            select(BookingTimeline.reason).where(BookingTimeline.to_state == "REJECTED")
        ).scalar_one()
    assert booking.payment_ref is None
    assert reason == "payment_not_found:pay-missing"


def test_booking_linked_to_failed_payment_is_rejected(client, session_factory):
    payment = seed_payment(session_factory, status="FAILED")

    assert _post(client, created_event(payment_id=payment.id)).json()["status"] == "REJECTED"


def test_free_booking_is_confirmed_without_payment(client):
    assert _post(client, created_event(price=0)).json()["status"] == "CONFIRMED"


def test_bad_signature_is_rejected(client, session_factory):
    event = created_event()
    body = json.dumps(event).encode()

    assert _post(client, event, headers=cal_headers(body, secret="wrong")).status_code == 401
    assert client.post("/webhooks/scheduling", content=body).status_code == 401
    with session_factory() as db:
        assert db.execute(select(func.count()).select_from(BookingRecord)).scalar_one() == 0


def test_unknown_trigger_event_is_rejected(client):
    event = created_event()
    event["triggerEvent"] = "MEETING_ENDED"

    assert _post(client, event).status_code == 400


def test_cancellation_is_idempotent(client, session_factory):
    payment = seed_payment(session_factory)
    _post(client, created_event(payment_id=payment.id))
    cancel = {"triggerEvent": "BOOKING_CANCELLED", "payload": {"bookingId": 101, "uid": "uid-101"}}

    first = _post(client, cancel)
    second = _post(client, cancel)

    assert first.status_code == 200
    assert first.json()["status"] == "CANCELLED"
    assert second.json()["replayed"] is True


def test_rejecting_a_cancelled_booking_conflicts(client, session_factory):
    payment = seed_payment(session_factory)
    _post(client, created_event(payment_id=payment.id))
    _post(client, {"triggerEvent": "BOOKING_CANCELLED", "payload": {"uid": "uid-101"}})

    resp = _post(client, {"triggerEvent": "BOOKING_REJECTED", "payload": {"uid": "uid-101"}})

    assert resp.status_code == 409


def test_session_lifecycle_transitions(service, session_factory):
    payment = seed_payment(session_factory)
    body = json.dumps(created_event(payment_id=payment.id)).encode()
    booking_id = service.ingest(body, cal_headers(body)["x-cal-signature-256"]).booking_id

    with pytest.raises(InvariantViolation, match="start window"):
        service.transition(booking_id, "IN_PROGRESS", "host_started", now=START - timedelta(hours=1))
    assert service.transition(booking_id, "IN_PROGRESS", "host_started", now=START + timedelta(minutes=2)).status == (
        "IN_PROGRESS"
    )
    assert service.transition(booking_id, "COMPLETED", "host_ended").status == "COMPLETED"
    assert service.transition(booking_id, "REVIEWED", "review_left").state_version == 4


def test_transition_endpoint_requires_api_key(client, session_factory):
    payment = seed_payment(session_factory)
    booking_id = _post(client, created_event(payment_id=payment.id)).json()["booking_id"]

    assert client.post(f"/bookings/{booking_id}/transitions", json={"status": "CANCELLED"}).status_code == 401
    resp = client.post(
        f"/bookings/{booking_id}/transitions",
        json={"status": "COMPLETED", "reason": "ops"},
        headers={"x-api-key": API_KEY},
    )
    assert resp.status_code == 409
    resp = client.post(
        f"/bookings/{booking_id}/transitions",
        json={"status": "CANCELLED", "reason": "mentor_unavailable"},
        headers={"x-api-key": API_KEY},
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "CANCELLED"
    assert client.get(f"/bookings/{booking_id}").json()["state_version"] == 2
