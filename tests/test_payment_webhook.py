"""Stripe webhook ingestion: signature, validation, idempotent capture."""

import json
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from conftest import checkout_completed_event, checkout_metadata, seed_payment, stripe_headers
from mentorsaga.common.db import ensure_utc
from mentorsaga.common.models import OutboxEvent
from mentorsaga.services.payments import main
from mentorsaga.services.payments.dispatcher import DeferredEffectDispatcher, DispatchError
from mentorsaga.services.payments.models import PaymentRecord
from mentorsaga.services.payments.service import PaymentIngestService
from mentorsaga.services.reconciliation.models import SagaStep


class BrokenDispatcher(DeferredEffectDispatcher):
    def dispatch(self, db, dispatch, trace_id):
        raise DispatchError("outbox unavailable")


@pytest.fixture
def client(session_factory, fake_bus, monkeypatch):
    monkeypatch.setattr(
        main, "service", PaymentIngestService(session_factory, DeferredEffectDispatcher(session_factory, fake_bus))
    )
    return TestClient(main.app)


def _post(client, event: dict, headers: dict | None = None):
    body = json.dumps(event).encode()
    return client.post("/webhooks/stripe", content=body, headers=headers or stripe_headers(body))


def _count(session_factory, model) -> int:
    with session_factory() as db:
        return db.execute(select(func.count()).select_from(model)).scalar_one()


def test_checkout_completed_records_payment_and_dispatches(client, session_factory):
    resp = _post(client, checkout_completed_event())

    assert resp.status_code == 200
    body = resp.json()
    assert body["replayed"] is False
    assert body["status"] == "SUCCEEDED"
    with session_factory() as db:
        payment = db.get(PaymentRecord, body["payment_id"])
        outbox = db.execute(select(OutboxEvent)).scalars().all()
        steps = db.execute(select(SagaStep.step)).scalars().all()
    assert payment.external_payment_intent_id == "pi_123"
    assert payment.amount == 5000
    assert payment.platform_fee == 500
    assert payment.mentor_payout_amount == 4500
    expected_end = datetime.now(timezone.utc) + timedelta(hours=72)
    assert abs(ensure_utc(payment.dispute_period_end) - expected_end) < timedelta(minutes=1)
    assert [row.topic for row in outbox] == ["checkout.completed"]
    assert outbox[0].payload["payload"]["payment_id"] == payment.id
    assert outbox[0].payload["payload"]["metadata"]["eventTypeId"] == 42
    assert steps == ["PAYMENT_CAPTURED"]


def test_replayed_delivery_is_acknowledged_without_side_effects(client, session_factory):
    event = checkout_completed_event()
    first = _post(client, event)
    second = _post(client, event)

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["replayed"] is True
    assert second.json()["payment_id"] == first.json()["payment_id"]
    assert _count(session_factory, PaymentRecord) == 1
    assert _count(session_factory, OutboxEvent) == 1


def test_invalid_signature_is_rejected(client, session_factory):
    event = checkout_completed_event()
    body = json.dumps(event).encode()
    resp = _post(client, event, headers=stripe_headers(body, secret="whsec_wrong"))

    assert resp.status_code == 401
    assert _count(session_factory, PaymentRecord) == 0


def test_missing_signature_is_rejected(client):
    body = json.dumps(checkout_completed_event()).encode()
    resp = client.post("/webhooks/stripe", content=body, headers={"content-type": "application/json"})

    assert resp.status_code == 401


def test_missing_metadata_field_is_a_client_error(client, session_factory):
    resp = _post(client, checkout_completed_event(metadata=checkout_metadata(eventTypeId=None)))

    assert resp.status_code == 400
    assert "eventTypeId" in resp.json()["detail"]
    assert _count(session_factory, PaymentRecord) == 0


def test_unknown_event_type_is_rejected(client):
    event = checkout_completed_event()
    event["type"] = "invoice.paid"

    assert _post(client, event).status_code == 400


def test_checkout_expired_is_acknowledged(client, session_factory):
    resp = _post(client, {"id": "evt_exp", "type": "checkout.session.expired", "data": {"object": {"id": "cs_9"}}})

    assert resp.status_code == 200
    assert resp.json()["payment_id"] is None
    assert _count(session_factory, PaymentRecord) == 0


def test_dispatch_failure_returns_server_error_and_persists_nothing(session_factory, fake_bus, monkeypatch):
    monkeypatch.setattr(
        main, "service", PaymentIngestService(session_factory, BrokenDispatcher(session_factory, fake_bus))
    )
    resp = _post(TestClient(main.app), checkout_completed_event())

    assert resp.status_code == 503
    assert _count(session_factory, PaymentRecord) == 0
    assert _count(session_factory, SagaStep) == 0


def test_charge_refunded_moves_payment_to_refunded(client, session_factory):
    payment = seed_payment(session_factory, status="FAILED", intent="pi_refund")
    event = {
        "id": "evt_ref",
        "type": "charge.refunded",
        "data": {"object": {"id": "ch_1", "payment_intent": "pi_refund", "amount_refunded": 5000}},
    }

    assert _post(client, event).json()["status"] == "REFUNDED"
    assert _post(client, event).json()["replayed"] is True
    with session_factory() as db:
        assert db.get(PaymentRecord, payment.id).platform_status == "REFUNDED"


def test_get_payment(client, session_factory):
    payment = seed_payment(session_factory)

    resp = client.get(f"/payments/{payment.id}")
    assert resp.status_code == 200
    assert resp.json()["platform_status"] == "SUCCEEDED"
    assert client.get("/payments/missing").status_code == 404


def test_refund_of_transferred_payment_is_acknowledged_unchanged(client, session_factory):
    payment = seed_payment(session_factory, status="TRANSFERRED", intent="pi_paid_out")
    event = {
        "id": "evt_late_refund",
        "type": "charge.refunded",
        "data": {"object": {"id": "ch_2", "payment_intent": "pi_paid_out", "amount_refunded": 5000}},
    }

    resp = _post(client, event)

    assert resp.status_code == 200
    assert resp.json()["status"] == "TRANSFERRED"
    with session_factory() as db:
        assert db.get(PaymentRecord, payment.id).platform_status == "TRANSFERRED"
