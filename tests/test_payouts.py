"""Mentor payout sweep after the dispute period."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from conftest import seed_payment
from mentorsaga.common.errors import ValidationError
from mentorsaga.common.models import OutboxEvent
from mentorsaga.services.payments.models import PaymentRecord
from mentorsaga.services.reconciliation.gateway import TransferReceipt
from mentorsaga.services.reconciliation.payouts import PayoutSweeper


class FakeGateway:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.transfers: list[dict] = []

    async def transfer_payout(self, **kwargs) -> TransferReceipt:
        self.transfers.append(kwargs)
        if self.fail:
            raise ValidationError("destination account is restricted")
        return TransferReceipt(transfer_id=f"tr_{len(self.transfers)}", amount=kwargs["amount"])


def _past() -> datetime:
    return datetime.now(timezone.utc) - timedelta(hours=1)


@pytest.mark.asyncio
async def test_due_payment_is_transferred(session_factory):
    due = seed_payment(session_factory, intent="pi_due", dispute_period_end=_past())
    not_due = seed_payment(session_factory, intent="pi_not_due")
    gateway = FakeGateway()

    counts = await PayoutSweeper(session_factory, gateway).sweep_once()

    assert counts == {"transferred": 1, "failed": 0}
    assert gateway.transfers[0]["amount"] == 4500
    assert gateway.transfers[0]["destination"] == "acct_mentor1"
    assert gateway.transfers[0]["attempt"] == 0
    with session_factory() as db:
        assert db.get(PaymentRecord, due.id).platform_status == "TRANSFERRED"
        assert db.get(PaymentRecord, due.id).transfer_id == "tr_1"
        assert db.get(PaymentRecord, not_due.id).platform_status == "SUCCEEDED"


@pytest.mark.asyncio
async def test_compensated_payment_is_never_paid_out(session_factory):
    seed_payment(session_factory, status="FAILED", dispute_period_end=_past())
    gateway = FakeGateway()

    await PayoutSweeper(session_factory, gateway).sweep_once()

    assert gateway.transfers == []


@pytest.mark.asyncio
async def test_failures_are_retried_then_alerted(session_factory):
    payment = seed_payment(session_factory, dispute_period_end=_past())
    gateway = FakeGateway(fail=True)
    sweeper = PayoutSweeper(session_factory, gateway)

    for _ in range(4):
        await sweeper.sweep_once()

    assert [t["attempt"] for t in gateway.transfers] == [0, 1, 2]
    with session_factory() as db:
        stored = db.get(PaymentRecord, payment.id)
        alerts = db.execute(select(OutboxEvent).where(OutboxEvent.topic == "payout.failed")).scalars().all()
    assert stored.transfer_retry_count == 3
    assert stored.platform_status == "SUCCEEDED"
    assert len(alerts) == 1
    assert alerts[0].payload["payload"]["attempts"] == 3
