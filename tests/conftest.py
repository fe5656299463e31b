"""Shared fixtures: in-memory SQLite schema, fake bus, signing helpers."""

import os

# Settings are read at import time; set them before any mentorsaga import.
os.environ.setdefault("POSTGRES_DSN", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("CALCOM_WEBHOOK_SECRET", "cal_test_secret")
os.environ.setdefault("CALCOM_CLIENT_ID", "client-1")
os.environ.setdefault("CALCOM_SECRET_KEY", "cal-client-secret")
os.environ.setdefault("CALCOM_API_URL", "https://cal.test/v2")

import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mentorsaga.common.db import Base
from mentorsaga.common.events import EventEnvelope
from mentorsaga.common.models import InboxEvent, OutboxEvent  # noqa: F401
from mentorsaga.services.calendar_tokens.models import OAuthTokenRecord  # noqa: F401
from mentorsaga.services.notification.models import NotificationLog  # noqa: F401
from mentorsaga.services.payments.models import PaymentRecord
from mentorsaga.services.reconciliation.models import SagaStep  # noqa: F401
from mentorsaga.services.scheduling.models import BookingRecord, BookingTimeline  # noqa: F401

STRIPE_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]
CAL_SECRET = os.environ["CALCOM_WEBHOOK_SECRET"]
API_KEY = os.environ["API_KEY"]


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    Base.metadata.drop_all(engine)
    engine.dispose()


class FakeBus:
    """Stands in for `KafkaBus`; records what would have been produced."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.published: list[tuple[str, EventEnvelope]] = []

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        if self.fail:
            raise RuntimeError("kafka unavailable")
        self.published.append((topic, event))

    async def close(self) -> None:
        return None


@pytest.fixture
def fake_bus():
    return FakeBus()


def stripe_headers(body: bytes, secret: str = STRIPE_SECRET) -> dict:
    timestamp = int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()
    return {"stripe-signature": f"t={timestamp},v1={digest}", "content-type": "application/json"}


def cal_headers(body: bytes, secret: str = CAL_SECRET) -> dict:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return {"x-cal-signature-256": digest, "content-type": "application/json"}


def checkout_metadata(**overrides) -> dict:
    metadata = {
        "mentorUserId": "mentor-1",
        "eventTypeId": "42",
        "startTime": "2030-01-15T15:00:00Z",
        "attendeeName": "Ada Mentee",
        "attendeeEmail": "ada@example.com",
        "attendeeTimeZone": "America/New_York",
        "mentorUsername": "grace",
        "mentorFee": "0",
        "menteeFee": "500",
        "mentorAmount": "4500",
        "mentorStripeAccountId": "acct_mentor1",
    }
    metadata.update(overrides)
    return {key: value for key, value in metadata.items() if value is not None}


def checkout_completed_event(intent: str = "pi_123", session_id: str = "cs_123", metadata: dict | None = None) -> dict:
    return {
        "id": f"evt_{uuid4().hex[:12]}",
        "object": "event",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "payment_intent": intent,
                "amount_total": 5000,
                "currency": "usd",
                "status": "complete",
                "payment_status": "paid",
                "customer_details": {"email": "ada@example.com", "name": "Ada Mentee"},
                "metadata": metadata if metadata is not None else checkout_metadata(),
            }
        },
    }


def seed_payment(
    session_factory,
    *,
    status: str = "SUCCEEDED",
    intent: str = "pi_seed",
    amount: int = 5000,
    dispute_period_end: datetime | None = None,
    payout_amount: int = 4500,
) -> PaymentRecord:
    payment = PaymentRecord(
        id=str(uuid4()),
        external_payment_intent_id=intent,
        external_checkout_session_id=f"cs_{intent}",
        mentor_id="mentor-1",
        customer_email="ada@example.com",
        customer_name="Ada Mentee",
        amount=amount,
        currency="USD",
        mentor_fee=0,
        platform_fee=amount - payout_amount,
        mentor_payout_amount=payout_amount,
        platform_status=status,
        external_status="succeeded",
        dispute_period_end=dispute_period_end or datetime.now(timezone.utc) + timedelta(hours=72),
        transfer_retry_count=0,
        processor_metadata=checkout_metadata(),
    )
    with session_factory() as db:
        db.add(payment)
        db.commit()
    return payment


def checkout_envelope(payment: PaymentRecord, event_id: str | None = None) -> EventEnvelope:
    payload = {
        "payment_id": payment.id,
        "payment_intent_id": payment.external_payment_intent_id,
        "checkout_session_id": payment.external_checkout_session_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "metadata": checkout_metadata(),
    }
    return EventEnvelope(
        event_id=event_id or str(uuid4()),
        event_type="checkout.completed",
        aggregate_id=payment.id,
        trace_id="trace-test",
        payload=json.loads(json.dumps(payload)),
    )
