"""Mentor payout sweep.

Once a payment's dispute period has ended, the mentor's share is transferred to
their connected Stripe account. Failed transfers are retried on later sweeps
until `payout_max_retries`, after which an admin alert is emitted and the
payment is left for manual handling.
"""

import asyncio
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import select, update

from mentorsaga.common.config import settings
from mentorsaga.common.errors import ReconciliationError, ValidationError
from mentorsaga.common.logging import logger
from mentorsaga.common.metrics import payouts_total
from mentorsaga.common.outbox import enqueue_event
from mentorsaga.common.state_machine import PaymentStatus, validate_payment_transition
from mentorsaga.services.payments.models import PaymentRecord
from mentorsaga.services.reconciliation.gateway import StripeGateway

PAYOUT_FAILED_TOPIC = "payout.failed"


class PayoutSweeper:
    def __init__(self, session_factory, gateway: StripeGateway, service_name: str = "reconciliation") -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.service_name = service_name

    def due_payments(self, db, now: datetime) -> list[PaymentRecord]:
        return (
            db.execute(
                select(PaymentRecord)
                .where(
                    PaymentRecord.platform_status == PaymentStatus.SUCCEEDED.value,
                    PaymentRecord.dispute_period_end <= now,
                    PaymentRecord.transfer_id.is_(None),
                    PaymentRecord.mentor_payout_amount > 0,
                    PaymentRecord.transfer_retry_count < settings.payout_max_retries,
                )
                .order_by(PaymentRecord.dispute_period_end)
                .limit(100)
            )
            .scalars()
            .all()
        )

    async def sweep_once(self, now: datetime | None = None) -> dict[str, int]:
        now = now or datetime.now(timezone.utc)
        with self.session_factory() as db:
            payments = self.due_payments(db, now)
        counts = {"transferred": 0, "failed": 0}
        for payment in payments:
            if await self._pay(payment):
                counts["transferred"] += 1
            else:
                counts["failed"] += 1
        if payments:
            logger.info("payout sweep finished due=%s results=%s", len(payments), counts)
        return counts

    async def _pay(self, payment: PaymentRecord) -> bool:
        destination = (payment.processor_metadata or {}).get("mentorStripeAccountId")
        try:
            if not destination:
                raise ValidationError(f"payment {payment.id} has no mentor payout account")
            receipt = await self.gateway.transfer_payout(
                payment_id=payment.id,
                amount=payment.mentor_payout_amount,
                currency=payment.currency,
                destination=destination,
                attempt=payment.transfer_retry_count,
            )
        except ReconciliationError as exc:
            self._record_failure(payment, str(exc))
            return False

        with self.session_factory() as db:
            validate_payment_transition(payment.platform_status, PaymentStatus.TRANSFERRED.value)
            db.execute(
                update(PaymentRecord)
                .where(PaymentRecord.id == payment.id, PaymentRecord.platform_status == payment.platform_status)
                .values(
                    platform_status=PaymentStatus.TRANSFERRED.value,
                    transfer_id=receipt.transfer_id,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            db.commit()
        payouts_total.labels(service=self.service_name, outcome="transferred").inc()
        logger.info("payout transferred payment_id=%s transfer_id=%s", payment.id, receipt.transfer_id)
        return True

    def _record_failure(self, payment: PaymentRecord, error: str) -> None:
        retries = payment.transfer_retry_count + 1
        with self.session_factory() as db:
            db.execute(
                update(PaymentRecord)
                .where(PaymentRecord.id == payment.id)
                .values(transfer_retry_count=retries, updated_at=datetime.now(timezone.utc))
            )
            if retries >= settings.payout_max_retries:
                enqueue_event(
                    db,
                    PAYOUT_FAILED_TOPIC,
                    aggregate_id=payment.id,
                    trace_id=str(uuid4()),
                    payload={
                        "payment_id": payment.id,
                        "mentor_id": payment.mentor_id,
                        "amount": payment.mentor_payout_amount,
                        "currency": payment.currency,
                        "attempts": retries,
                        "error": error,
                    },
                )
            db.commit()
        payouts_total.labels(service=self.service_name, outcome="failed").inc()
        logger.warning("payout failed payment_id=%s attempt=%s error=%s", payment.id, retries, error)

    async def run_forever(self, interval_seconds: float | None = None) -> None:
        interval = interval_seconds or settings.payout_sweep_interval_seconds
        while True:
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("payout sweep failed: %s", exc)
            await asyncio.sleep(interval)
