"""Outbox publishing and consumer retry / dead-letter routing."""

import pytest
from sqlalchemy import select

from conftest import FakeBus
from mentorsaga.common import events
from mentorsaga.common.errors import TransientExternalError
from mentorsaga.common.events import EventEnvelope, dispatch_with_retry
from mentorsaga.common.models import OutboxEvent
from mentorsaga.common.outbox import enqueue_event, inbox_seen, mark_inbox, publish_outbox_once


def _enqueue(session_factory) -> None:
    with session_factory() as db:
        enqueue_event(db, "checkout.completed", aggregate_id="pay-1", trace_id="t-1", payload={"payment_id": "pay-1"})
        db.commit()


def _statuses(session_factory) -> list[str]:
    with session_factory() as db:
        return db.execute(select(OutboxEvent.status)).scalars().all()


@pytest.mark.asyncio
async def test_publisher_marks_rows_sent(session_factory):
    _enqueue(session_factory)
    bus = FakeBus()

    assert await publish_outbox_once(session_factory, bus, "payments") == 1

    topic, envelope = bus.published[0]
    assert topic == "checkout.completed"
    assert envelope.aggregate_id == "pay-1"
    assert _statuses(session_factory) == ["SENT"]
    assert await publish_outbox_once(session_factory, bus, "payments") == 0


@pytest.mark.asyncio
async def test_publish_failure_requeues_row(session_factory):
    _enqueue(session_factory)

    await publish_outbox_once(session_factory, FakeBus(fail=True), "payments")

    assert _statuses(session_factory) == ["PENDING"]


def test_inbox_dedupe_is_per_consumer(session_factory):
    with session_factory() as db:
        mark_inbox(db, "evt-1", "reconciliation")
        db.commit()
        assert inbox_seen(db, "evt-1", "reconciliation")
        assert not inbox_seen(db, "evt-1", "notification")


@pytest.fixture
def no_sleep(monkeypatch):
    delays = []

    async def _sleep(seconds):
        delays.append(seconds)

    monkeypatch.setattr(events.asyncio, "sleep", _sleep)
    return delays


def _event() -> EventEnvelope:
    return EventEnvelope(event_type="checkout.completed", aggregate_id="pay-1", trace_id="t-1", payload={})


@pytest.mark.asyncio
async def test_transient_failures_back_off_then_dead_letter(no_sleep):
    bus = FakeBus()
    calls = []

    async def handler(event):
        calls.append(event.event_id)
        raise TransientExternalError("scheduling unavailable")

    await dispatch_with_retry("checkout.completed", _event(), handler, bus)

    assert len(calls) == 3
    assert no_sleep == [1, 2]
    topic, dlq = bus.published[0]
    assert topic == "checkout.completed.dlq"
    assert dlq.payload["error_type"] == "RETRY_EXHAUSTED"
    assert dlq.payload["replay_topic"] == "checkout.completed"


@pytest.mark.asyncio
async def test_transient_failure_then_success(no_sleep):
    bus = FakeBus()
    outcomes = [TransientExternalError("blip"), None]

    async def handler(event):
        outcome = outcomes.pop(0)
        if outcome:
            raise outcome

    await dispatch_with_retry("checkout.completed", _event(), handler, bus)

    assert bus.published == []
    assert no_sleep == [1]


@pytest.mark.asyncio
async def test_non_retryable_failure_dead_letters_immediately(no_sleep):
    bus = FakeBus()

    async def handler(event):
        raise KeyError("payment_id")

    await dispatch_with_retry("checkout.completed", _event(), handler, bus)

    assert no_sleep == []
    assert bus.published[0][1].payload["error_type"] == "NON_RETRYABLE"
