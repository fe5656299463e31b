"""Payment webhook ingestion.

Verifies Stripe deliveries, records each captured payment exactly once
(insert-or-ignore keyed on the payment intent), and hands the booking effect
to the dispatcher in the same transaction. Replays are acknowledged without
side effects.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import stripe
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from mentorsaga.common.config import settings
from mentorsaga.common.db import insert_ignore
from mentorsaga.common.errors import AuthenticationError, InvariantViolation, ValidationError
from mentorsaga.common.logging import logger, payment_id_ctx
from mentorsaga.common.state_machine import PaymentStatus, validate_payment_transition
from mentorsaga.services.payments.dispatcher import DeferredEffectDispatcher, DispatchError
from mentorsaga.services.payments.models import PaymentRecord
from mentorsaga.services.payments.schemas import (
    ChargeRefunded,
    CheckoutDispatch,
    CheckoutSessionCompleted,
    CheckoutSessionExpired,
    parse_stripe_event,
)
from mentorsaga.services.reconciliation.models import SagaStepName
from mentorsaga.services.reconciliation.steps import record_step


@dataclass
class IngestResult:
    event_type: str
    payment_id: str | None = None
    replayed: bool = False
    status: str | None = None

    def as_response(self) -> dict:
        return {
            "received": True,
            "event_type": self.event_type,
            "payment_id": self.payment_id,
            "replayed": self.replayed,
            "status": self.status,
        }


class PaymentIngestService:
    def __init__(
        self,
        session_factory,
        dispatcher: DeferredEffectDispatcher,
        webhook_secret: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret

    def verify(self, payload: bytes, signature: str | None) -> dict:
        """Check the `Stripe-Signature` header before anything is parsed."""

        if not signature:
            raise AuthenticationError("missing Stripe-Signature header")
        if not self.webhook_secret:
            raise AuthenticationError("stripe webhook secret is not configured")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise AuthenticationError("invalid Stripe signature") from exc
        except ValueError as exc:
            raise ValidationError("webhook body is not valid JSON") from exc
        return json.loads(payload)

    def ingest(self, payload: bytes, signature: str | None, trace_id: str) -> IngestResult:
        event = parse_stripe_event(self.verify(payload, signature))
        if isinstance(event, CheckoutSessionCompleted):
            return self._checkout_completed(event, trace_id)
        if isinstance(event, ChargeRefunded):
            return self._charge_refunded(event)
        if isinstance(event, CheckoutSessionExpired):
            logger.info("checkout session expired session_id=%s", event.data.object.id)
        return IngestResult(event_type=event.type)

    def _checkout_completed(self, event: CheckoutSessionCompleted, trace_id: str) -> IngestResult:
        session = event.data.object
        meta = session.metadata
        customer = session.customer_details
        now = datetime.now(timezone.utc)

        with self.session_factory() as db:
            try:
                payment_id = insert_ignore(
                    db,
                    PaymentRecord,
                    {
                        "id": str(uuid4()),
                        "external_payment_intent_id": session.payment_intent,
                        "external_checkout_session_id": session.id,
                        "mentor_id": meta.mentor_id,
                        "customer_email": (customer.email if customer and customer.email else meta.attendee_email),
                        "customer_name": (customer.name if customer and customer.name else meta.attendee_name),
                        "amount": session.amount_total,
                        "currency": session.currency.upper(),
                        "mentor_fee": meta.mentor_fee,
                        "platform_fee": meta.mentee_fee,
                        "mentor_payout_amount": meta.mentor_amount,
                        "platform_status": PaymentStatus.SUCCEEDED.value,
                        "external_status": "succeeded",
                        "dispute_period_end": now + timedelta(hours=settings.dispute_period_hours),
                        "transfer_retry_count": 0,
                        "processor_metadata": meta.model_dump(mode="json", by_alias=True),
                    },
                )
                if payment_id is None:
                    db.rollback()
                    existing = db.execute(
                        select(PaymentRecord).where(
                            PaymentRecord.external_payment_intent_id == session.payment_intent
                        )
                    ).scalar_one_or_none()
                    logger.info("checkout replay ignored payment_intent=%s", session.payment_intent)
                    return IngestResult(
                        event_type=event.type,
                        payment_id=existing.id if existing else None,
                        replayed=True,
                        status=existing.platform_status if existing else None,
                    )

                payment_id_ctx.set(payment_id)
                record_step(
                    db,
                    payment_id,
                    SagaStepName.PAYMENT_CAPTURED,
                    {"payment_intent_id": session.payment_intent, "amount": session.amount_total},
                )
                self.dispatcher.dispatch(
                    db,
                    CheckoutDispatch(
                        payment_id=payment_id,
                        payment_intent_id=session.payment_intent,
                        checkout_session_id=session.id,
                        amount=session.amount_total,
                        currency=session.currency.upper(),
                        metadata=meta,
                    ),
                    trace_id,
                )
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise DispatchError(f"could not record payment {session.payment_intent}") from exc
            except DispatchError:
                db.rollback()
                raise

        logger.info(
            "payment captured payment_intent=%s amount=%s mentor_id=%s",
            session.payment_intent,
            session.amount_total,
            meta.mentor_id,
        )
        return IngestResult(
            event_type=event.type,
            payment_id=payment_id,
            status=PaymentStatus.SUCCEEDED.value,
        )

    def _charge_refunded(self, event: ChargeRefunded) -> IngestResult:
        charge = event.data.object
        with self.session_factory() as db:
            payment = db.execute(
                select(PaymentRecord).where(PaymentRecord.external_payment_intent_id == charge.payment_intent)
            ).scalar_one_or_none()
            if payment is None:
                logger.info("refund for unknown payment_intent=%s ignored", charge.payment_intent)
                return IngestResult(event_type=event.type)
            if payment.platform_status == PaymentStatus.REFUNDED.value:
                return IngestResult(
                    event_type=event.type, payment_id=payment.id, replayed=True, status=payment.platform_status
                )
            try:
                validate_payment_transition(payment.platform_status, PaymentStatus.REFUNDED.value)
            except InvariantViolation:
                # Acknowledged and left for manual reconciliation.
                logger.warning(
                    "refund for payment_id=%s in status=%s cannot be applied; acknowledged for manual review "
                    "charge=%s amount_refunded=%s",
                    payment.id,
                    payment.platform_status,
                    charge.id,
                    charge.amount_refunded,
                )
                return IngestResult(event_type=event.type, payment_id=payment.id, status=payment.platform_status)
            db.execute(
                update(PaymentRecord)
                .where(PaymentRecord.id == payment.id, PaymentRecord.platform_status == payment.platform_status)
                .values(
                    platform_status=PaymentStatus.REFUNDED.value,
                    external_status="refunded",
                    updated_at=datetime.now(timezone.utc),
                )
            )
            db.commit()
        logger.info("payment refunded payment_id=%s amount_refunded=%s", payment.id, charge.amount_refunded)
        return IngestResult(event_type=event.type, payment_id=payment.id, status=PaymentStatus.REFUNDED.value)

    def get_payment(self, payment_id: str) -> PaymentRecord | None:
        with self.session_factory() as db:
            return db.get(PaymentRecord, payment_id)
