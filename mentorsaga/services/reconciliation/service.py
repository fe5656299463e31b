"""Booking reconciliation saga.

Consumes `checkout.completed`, creates the scheduling booking for a captured
payment, and compensates with a full refund when the booking cannot be made.
Every step is recorded in `saga_steps` before and after each external call, so
a redelivered event re-reads the log and resumes instead of repeating work:

* compensation recorded        -> skip
* BOOKING_FAILED only          -> resume compensation (refund is idempotent)
* BOOKING_SUCCEEDED            -> skip
* BOOKING_ATTEMPTED only       -> wait while the attempt may still be running,
                                  then escalate; the remote call may have succeeded
* nothing yet                  -> book
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from sqlalchemy import select, update

from mentorsaga.common.config import settings
from mentorsaga.common.db import ensure_utc
from mentorsaga.common.errors import AuthenticationError, ReconciliationError, TransientExternalError
from mentorsaga.common.events import EventEnvelope, KafkaBus, consume_forever
from mentorsaga.common.logging import logger, mentor_id_ctx
from mentorsaga.common.metrics import (
    booking_failures_total,
    bookings_created_total,
    duplicate_events_skipped_total,
    refunds_total,
    saga_e2e_seconds,
)
from mentorsaga.common.outbox import enqueue_event, inbox_seen, mark_inbox, publish_outbox_forever
from mentorsaga.common.state_machine import PaymentStatus, validate_payment_transition
from mentorsaga.common.tracing import tracer
from mentorsaga.services.calendar_tokens.client import SchedulingClient
from mentorsaga.services.calendar_tokens.service import TokenLifecycleManager
from mentorsaga.services.payments.dispatcher import CHECKOUT_COMPLETED_TOPIC
from mentorsaga.services.payments.models import PaymentRecord
from mentorsaga.services.payments.schemas import CheckoutDispatch
from mentorsaga.services.reconciliation.gateway import StripeGateway
from mentorsaga.services.reconciliation.models import (
    BOOKING_RESULT_STEPS,
    COMPENSATION_RESULT_STEPS,
    SagaStep,
    SagaStepName,
)
from mentorsaga.services.reconciliation.steps import load_steps, record_step
from mentorsaga.services.scheduling.models import BookingRecord

BOOKING_COMPENSATED_TOPIC = "booking.compensated"
MANUAL_REVIEW_TOPIC = "saga.manual_review"

REFUNDED_MESSAGE = "Failed to create booking, payment has been refunded."
REFUND_FAILED_MESSAGE = (
    "Failed to create booking and the automatic refund did not go through; "
    "support has been notified and will refund the payment manually."
)

TERMINAL_STEPS = (
    BOOKING_RESULT_STEPS
    | COMPENSATION_RESULT_STEPS
    | {SagaStepName.MANUAL_RECONCILIATION_REQUIRED.value}
)


class SagaPlan(str, Enum):
    BOOK = "BOOK"
    COMPENSATE = "COMPENSATE"
    ESCALATE = "ESCALATE"
    WAIT = "WAIT"
    SKIP = "SKIP"


@dataclass(frozen=True)
class CompensationResult:
    payment_id: str
    refunded: bool
    message: str
    refund_id: str | None = None


def plan_saga(
    payment: PaymentRecord, steps: dict, has_booking: bool, now: datetime | None = None
) -> tuple[SagaPlan, str]:
    """Decide what a (re)delivered checkout event still needs to do.

    An attempt younger than `booking_attempt_timeout_seconds` may still be
    running in another consumer, so it is waited on rather than escalated.
    """

    recorded = set(steps)
    if recorded & COMPENSATION_RESULT_STEPS:
        return SagaPlan.SKIP, "compensation_recorded"
    if SagaStepName.BOOKING_FAILED.value in recorded:
        return SagaPlan.COMPENSATE, "resume_compensation"
    if SagaStepName.BOOKING_SUCCEEDED.value in recorded:
        return SagaPlan.SKIP, "booking_recorded"
    if SagaStepName.MANUAL_RECONCILIATION_REQUIRED.value in recorded:
        return SagaPlan.SKIP, "manual_review_pending"
    if has_booking:
        return SagaPlan.SKIP, "booking_exists"
    if SagaStepName.BOOKING_ATTEMPTED.value in recorded:
        attempted_at = ensure_utc(steps[SagaStepName.BOOKING_ATTEMPTED.value].created_at)
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=settings.booking_attempt_timeout_seconds)
        if attempted_at is not None and attempted_at > cutoff:
            return SagaPlan.WAIT, "attempt_in_flight"
        return SagaPlan.ESCALATE, "attempt_without_result"
    if payment.platform_status != PaymentStatus.SUCCEEDED.value:
        return SagaPlan.SKIP, f"payment_{payment.platform_status.lower()}"
    return SagaPlan.BOOK, "new"


class BookingReconciliationWorker:
    """Owns the payment -> booking -> (refund) saga."""

    def __init__(
        self,
        session_factory,
        tokens: TokenLifecycleManager,
        scheduling: SchedulingClient,
        gateway: StripeGateway,
        service_name: str = "reconciliation",
    ) -> None:
        self.session_factory = session_factory
        self.tokens = tokens
        self.scheduling = scheduling
        self.gateway = gateway
        self.service_name = service_name
        self.kafka = KafkaBus()

    def _ack(self, db, event: EventEnvelope) -> None:
        # A concurrent duplicate may have acked the same event first.
        if not inbox_seen(db, event.event_id, self.service_name):
            mark_inbox(db, event.event_id, self.service_name)

    def _observe_e2e(self, payment: PaymentRecord, outcome: str) -> None:
        if payment.created_at is None:
            return
        elapsed = max(0.0, (datetime.now(timezone.utc) - ensure_utc(payment.created_at)).total_seconds())
        saga_e2e_seconds.labels(service=self.service_name, outcome=outcome).observe(elapsed)

    async def handle_checkout_completed(self, event: EventEnvelope) -> CompensationResult | None:
        """Book the session for a captured payment, or compensate."""

        dispatch = CheckoutDispatch.model_validate(event.payload)
        mentor_id_ctx.set(dispatch.metadata.mentor_id)

        with self.session_factory() as db:
            if inbox_seen(db, event.event_id, self.service_name):
                logger.info("duplicate event skipped topic=%s event_id=%s", CHECKOUT_COMPLETED_TOPIC, event.event_id)
                duplicate_events_skipped_total.labels(service=self.service_name, topic=CHECKOUT_COMPLETED_TOPIC).inc()
                return None
            payment = db.get(PaymentRecord, dispatch.payment_id)
            if payment is None:
                logger.warning("checkout event for unknown payment_id=%s", dispatch.payment_id)
                self._ack(db, event)
                db.commit()
                return None

            has_booking = (
                db.execute(
                    select(BookingRecord.id).where(BookingRecord.payment_ref == payment.id).limit(1)
                ).first()
                is not None
            )
            plan, reason = plan_saga(payment, load_steps(db, payment.id), has_booking)
            logger.info("saga plan payment_id=%s plan=%s reason=%s", payment.id, plan.value, reason)

            if plan is SagaPlan.WAIT:
                raise TransientExternalError(f"booking attempt for payment {payment.id} is still in flight")
            if plan is SagaPlan.SKIP:
                self._ack(db, event)
                db.commit()
                return None
            if plan is SagaPlan.ESCALATE:
                self._escalate(db, payment, event, reason)
                db.commit()
                return None
            if plan is SagaPlan.BOOK:
                # Losing this insert means another consumer already owns the attempt.
                if not record_step(db, payment.id, SagaStepName.BOOKING_ATTEMPTED, {"event_id": event.event_id}):
                    db.rollback()
                    logger.info("booking attempt already claimed payment_id=%s", payment.id)
                    return None
                db.commit()

        if plan is SagaPlan.COMPENSATE:
            return await self._compensate(payment, event)

        try:
            created = await self._create_booking(dispatch)
        except ReconciliationError as exc:
            booking_failures_total.labels(service=self.service_name, error_type=type(exc).__name__).inc()
            logger.error("booking failed payment_id=%s error_type=%s error=%s", payment.id, type(exc).__name__, exc)
            with self.session_factory() as db:
                record_step(
                    db,
                    payment.id,
                    SagaStepName.BOOKING_FAILED,
                    {"error": str(exc), "error_type": type(exc).__name__},
                )
                db.commit()
            return await self._compensate(payment, event)

        with self.session_factory() as db:
            record_step(
                db,
                payment.id,
                SagaStepName.BOOKING_SUCCEEDED,
                {"external_booking_id": created.booking_id, "external_uid": created.uid},
            )
            self._ack(db, event)
            db.commit()
        bookings_created_total.labels(service=self.service_name).inc()
        self._observe_e2e(payment, "booked")
        logger.info("booking created payment_id=%s external_booking_id=%s", payment.id, created.booking_id)
        return None

    async def _create_booking(self, dispatch: CheckoutDispatch):
        meta = dispatch.metadata

        async def _call(access_token: str):
            return await self.scheduling.create_booking(
                access_token,
                event_type_id=meta.event_type_id,
                start=meta.start_time,
                attendee_name=meta.attendee_name,
                attendee_email=meta.attendee_email,
                time_zone=meta.attendee_time_zone,
                attendee_phone=meta.attendee_phone,
                metadata={"paymentId": dispatch.payment_id, "mentorUserId": meta.mentor_id},
            )

        with tracer.start_as_current_span("scheduling.create_booking") as span:
            span.set_attribute("mentorsaga.payment_id", dispatch.payment_id)
            token = await self.tokens.get_access_token(meta.mentor_id)
            try:
                return await _call(token)
            except AuthenticationError:
                # Remote revoked a token we still considered valid; one stale refresh, one retry.
                span.add_event("stale_token_refresh")
                outcome = await self.tokens.refresh(meta.mentor_id, stale=True)
                return await _call(outcome.access_token)

    async def _compensate(self, payment: PaymentRecord, event: EventEnvelope) -> CompensationResult:
        """Refund the full intent, then record the outcome in one transaction.

        A transient refund failure propagates so the consumer retries; the
        BOOKING_FAILED step makes the redelivery resume here.
        """

        refund_id = None
        refund_error = None
        try:
            with tracer.start_as_current_span("stripe.refund") as span:
                span.set_attribute("mentorsaga.payment_id", payment.id)
                receipt = await self.gateway.refund_payment(payment.external_payment_intent_id, payment.id)
            refund_id = receipt.refund_id
        except ReconciliationError as exc:
            if exc.retryable:
                refunds_total.labels(service=self.service_name, outcome="retry").inc()
                raise
            refund_error = str(exc)
            logger.error("refund failed payment_id=%s error=%s", payment.id, exc)

        refunded = refund_error is None
        message = REFUNDED_MESSAGE if refunded else REFUND_FAILED_MESSAGE
        step = SagaStepName.COMPENSATION_SUCCEEDED if refunded else SagaStepName.COMPENSATION_FAILED

        with self.session_factory() as db:
            if record_step(db, payment.id, step, {"refund_id": refund_id, "error": refund_error}):
                current = db.get(PaymentRecord, payment.id)
                if current.platform_status != PaymentStatus.FAILED.value:
                    validate_payment_transition(current.platform_status, PaymentStatus.FAILED.value)
                    db.execute(
                        update(PaymentRecord)
                        .where(
                            PaymentRecord.id == current.id,
                            PaymentRecord.platform_status == current.platform_status,
                        )
                        .values(
                            platform_status=PaymentStatus.FAILED.value,
                            updated_at=datetime.now(timezone.utc),
                        )
                    )
                enqueue_event(
                    db,
                    BOOKING_COMPENSATED_TOPIC,
                    aggregate_id=payment.id,
                    trace_id=event.trace_id,
                    payload={
                        "payment_id": payment.id,
                        "refunded": refunded,
                        "refund_id": refund_id,
                        "refund_error": refund_error,
                        "amount": payment.amount,
                        "currency": payment.currency,
                        "customer_email": payment.customer_email,
                        "customer_name": payment.customer_name,
                        "mentor_id": payment.mentor_id,
                        "message": message,
                    },
                )
            self._ack(db, event)
            db.commit()

        refunds_total.labels(service=self.service_name, outcome="succeeded" if refunded else "failed").inc()
        self._observe_e2e(payment, "compensated" if refunded else "compensation_failed")
        logger.info("compensation recorded payment_id=%s refunded=%s", payment.id, refunded)
        return CompensationResult(payment_id=payment.id, refunded=refunded, message=message, refund_id=refund_id)

    def _escalate(self, db, payment: PaymentRecord, event: EventEnvelope, reason: str) -> None:
        record_step(db, payment.id, SagaStepName.MANUAL_RECONCILIATION_REQUIRED, {"reason": reason})
        enqueue_event(
            db,
            MANUAL_REVIEW_TOPIC,
            aggregate_id=payment.id,
            trace_id=event.trace_id,
            payload={
                "payment_id": payment.id,
                "payment_intent_id": payment.external_payment_intent_id,
                "reason": reason,
                "amount": payment.amount,
                "currency": payment.currency,
            },
        )
        self._ack(db, event)
        logger.error("saga escalated for manual reconciliation payment_id=%s reason=%s", payment.id, reason)

    def saga_view(self, payment_id: str) -> dict | None:
        with self.session_factory() as db:
            payment = db.get(PaymentRecord, payment_id)
            if payment is None:
                return None
            steps = (
                db.execute(select(SagaStep).where(SagaStep.payment_id == payment_id).order_by(SagaStep.created_at))
                .scalars()
                .all()
            )
            return {
                "payment_id": payment.id,
                "platform_status": payment.platform_status,
                "steps": [{"step": s.step, "detail": s.detail, "created_at": s.created_at} for s in steps],
            }

    def stuck_sagas(self, older_than_minutes: int, now: datetime | None = None) -> list[dict]:
        """Captured payments with no terminal step after `older_than_minutes`."""

        cutoff = (now or datetime.now(timezone.utc)) - timedelta(minutes=older_than_minutes)
        finished = select(SagaStep.payment_id).where(SagaStep.step.in_(sorted(TERMINAL_STEPS)))
        with self.session_factory() as db:
            rows = db.execute(
                select(SagaStep.payment_id, SagaStep.created_at)
                .where(
                    SagaStep.step == SagaStepName.PAYMENT_CAPTURED.value,
                    SagaStep.created_at < cutoff,
                    SagaStep.payment_id.not_in(finished),
                )
                .order_by(SagaStep.created_at)
            ).all()
            result = []
            for row in rows:
                steps = load_steps(db, row.payment_id)
                result.append(
                    {
                        "payment_id": row.payment_id,
                        "captured_at": row.created_at,
                        "last_step": max(steps.values(), key=lambda s: ensure_utc(s.created_at)).step,
                    }
                )
            return result

    async def outbox_publisher(self) -> None:
        await publish_outbox_forever(self.session_factory, self.kafka, self.service_name)

    async def start_consumers(self) -> None:
        await asyncio.gather(
            consume_forever(
                CHECKOUT_COMPLETED_TOPIC,
                "reconciliation-checkout-completed",
                self.handle_checkout_completed,
                self.kafka,
            ),
        )
