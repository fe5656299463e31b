"""Notification consumer for compensations and admin alerts."""

import pytest
from sqlalchemy import select

from mentorsaga.common.events import EventEnvelope
from mentorsaga.services.notification.models import NotificationLog
from mentorsaga.services.notification.service import NotificationService


def _compensated(refunded: bool) -> EventEnvelope:
    return EventEnvelope(
        event_type="booking.compensated",
        aggregate_id="pay-1",
        trace_id="t-1",
        payload={
            "payment_id": "pay-1",
            "refunded": refunded,
            "refund_error": None if refunded else "stripe rejected request",
            "amount": 5000,
            "currency": "USD",
            "customer_email": "ada@example.com",
            "message": "Failed to create booking, payment has been refunded.",
        },
    )


def _logs(session_factory) -> list[NotificationLog]:
    with session_factory() as db:
        return db.execute(select(NotificationLog).order_by(NotificationLog.kind)).scalars().all()


@pytest.mark.asyncio
async def test_refunded_compensation_notifies_attendee_once(session_factory):
    service = NotificationService(session_factory, admin_email="ops@example.com")
    event = _compensated(refunded=True)

    await service.handle_event(event)
    await service.handle_event(event)

    logs = _logs(session_factory)
    assert [(log.kind, log.recipient) for log in logs] == [("booking_failed", "ada@example.com")]
    assert logs[0].message == "Failed to create booking, payment has been refunded."


@pytest.mark.asyncio
async def test_failed_refund_also_alerts_admin(session_factory):
    service = NotificationService(session_factory, admin_email="ops@example.com")

    await service.handle_event(_compensated(refunded=False))

    logs = _logs(session_factory)
    assert [(log.kind, log.recipient) for log in logs] == [
        ("booking_failed", "ada@example.com"),
        ("manual_refund_required", "ops@example.com"),
    ]
    assert "50.00 USD" in logs[1].message


@pytest.mark.asyncio
async def test_payout_failure_alerts_admin(session_factory):
    service = NotificationService(session_factory, admin_email="ops@example.com")

    await service.handle_event(
        EventEnvelope(
            event_type="payout.failed",
            aggregate_id="pay-2",
            trace_id="t-2",
            payload={"payment_id": "pay-2", "mentor_id": "mentor-1", "amount": 4500, "attempts": 3, "error": "x"},
        )
    )

    assert [log.kind for log in _logs(session_factory)] == ["payout_failed"]
