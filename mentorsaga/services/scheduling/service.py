"""Scheduling webhook ingestion and booking status transitions.

The scheduling service is the only writer of `bookings` rows: a booking is
created once per external booking id/uid (insert-or-ignore), starts in
PENDING_PAYMENT and is then confirmed or rejected by the state machine
depending on the linked payment.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import or_, select, update

from mentorsaga.common.config import settings
from mentorsaga.common.db import insert_ignore
from mentorsaga.common.errors import InvariantViolation, ValidationError
from mentorsaga.common.logging import logger
from mentorsaga.common.metrics import booking_transitions_total
from mentorsaga.common.state_machine import BookingStatus, PaymentStatus, validate_booking_transition
from mentorsaga.services.payments.models import PaymentRecord
from mentorsaga.services.scheduling.models import BookingRecord, BookingTimeline
from mentorsaga.services.scheduling.schemas import (
    BookingCancelled,
    BookingCreated,
    BookingReference,
    parse_scheduling_event,
)
from mentorsaga.services.scheduling.signatures import verify_signature


@dataclass
class BookingWebhookResult:
    trigger_event: str
    booking_id: str | None = None
    status: str | None = None
    created: bool = False
    replayed: bool = False

    def as_response(self) -> dict:
        return {
            "received": True,
            "trigger_event": self.trigger_event,
            "booking_id": self.booking_id,
            "status": self.status,
            "replayed": self.replayed,
        }


class BookingWebhookService:
    """Owns booking rows and their guarded status transitions."""

    def __init__(self, session_factory, webhook_secret: str | None = None, service_name: str = "scheduling") -> None:
        self.session_factory = session_factory
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.calcom_webhook_secret
        self.service_name = service_name

    def ingest(self, payload: bytes, signature: str | None) -> BookingWebhookResult:
        verify_signature(self.webhook_secret, payload, signature)
        try:
            raw = json.loads(payload)
        except ValueError as exc:
            raise ValidationError("webhook body is not valid JSON") from exc
        event = parse_scheduling_event(raw)
        if isinstance(event, BookingCreated):
            return self._booking_created(event, raw)
        if isinstance(event, BookingCancelled):
            reason = event.payload.cancellation_reason or "cancelled_by_scheduling"
            return self._status_change(event.trigger_event, event.payload, BookingStatus.CANCELLED, reason)
        reason = event.payload.rejection_reason or "rejected_by_scheduling"
        return self._status_change(event.trigger_event, event.payload, BookingStatus.REJECTED, reason)

    def _transition(
        self,
        db,
        booking: BookingRecord,
        new_status: BookingStatus,
        reason: str,
        *,
        now: datetime | None = None,
        payment_status: str | None = None,
    ) -> None:
        """Apply one validated transition guarded by `(id, status, state_version)`."""

        validate_booking_transition(
            booking.status,
            new_status.value,
            start_time=booking.start_time,
            now=now or datetime.now(timezone.utc),
            payment_status=payment_status,
            is_free=booking.is_free,
            window=timedelta(minutes=settings.in_progress_window_minutes),
        )
        from_status = booking.status
        current_version = booking.state_version
        result = db.execute(
            update(BookingRecord)
            .where(
                BookingRecord.id == booking.id,
                BookingRecord.status == from_status,
                BookingRecord.state_version == current_version,
            )
            .values(
                status=new_status.value,
                state_version=current_version + 1,
                updated_at=datetime.now(timezone.utc),
            )
        )
        if result.rowcount != 1:
            raise InvariantViolation(
                f"concurrent update of booking {booking.id} (expected version {current_version})"
            )
        booking.status = new_status.value
        booking.state_version = current_version + 1
        db.add(BookingTimeline(booking_id=booking.id, from_state=from_status, to_state=new_status.value, reason=reason))
        booking_transitions_total.labels(
            service=self.service_name, from_state=from_status, to_state=new_status.value
        ).inc()

    def _payment_status(self, db, payment_ref: str | None) -> str | None:
        if payment_ref is None:
            return None
        payment = db.get(PaymentRecord, payment_ref)
        return payment.platform_status if payment else None

    def _booking_created(self, event: BookingCreated, raw: dict) -> BookingWebhookResult:
        data = event.payload
        with self.session_factory() as db:
            payment = db.get(PaymentRecord, data.metadata.payment_id) if data.metadata.payment_id else None
            if data.metadata.payment_id and payment is None:
                logger.warning(
                    "booking references unknown payment_id=%s external_booking_id=%s",
                    data.metadata.payment_id,
                    data.booking_id,
                )
            is_free = data.metadata.payment_id is None and not data.price
            booking_id = insert_ignore(
                db,
                BookingRecord,
                {
                    "id": str(uuid4()),
                    "external_booking_id": data.booking_id,
                    "external_uid": data.uid,
                    "title": data.title,
                    "start_time": data.start_time,
                    "end_time": data.end_time,
                    "status": BookingStatus.PENDING_PAYMENT.value,
                    "state_version": 0,
                    "event_type_id": data.event_type_id,
                    "payment_ref": payment.id if payment else None,
                    "is_free": is_free,
                    "attendees": data.attendees,
                    "organizer": data.organizer,
                    "webhook_payload": raw,
                },
            )
            if booking_id is None:
                db.rollback()
                existing = self._find(db, BookingReference(bookingId=data.booking_id, uid=data.uid))
                logger.info("booking webhook replay ignored external_booking_id=%s", data.booking_id)
                return BookingWebhookResult(
                    trigger_event=event.trigger_event,
                    booking_id=existing.id if existing else None,
                    status=existing.status if existing else None,
                    replayed=True,
                )

            booking = db.get(BookingRecord, booking_id)
            db.add(
                BookingTimeline(
                    booking_id=booking.id,
                    from_state=None,
                    to_state=BookingStatus.PENDING_PAYMENT.value,
                    reason="booking_created",
                )
            )
            payment_status = payment.platform_status if payment else None
            if is_free or payment_status == PaymentStatus.SUCCEEDED.value:
                self._transition(
                    db,
                    booking,
                    BookingStatus.CONFIRMED,
                    "free_event" if is_free else "payment_settled",
                    payment_status=payment_status,
                )
            else:
                reason = "payment_not_settled"
                if data.metadata.payment_id and payment is None:
                    reason = f"payment_not_found:{data.metadata.payment_id}"
                self._transition(db, booking, BookingStatus.REJECTED, reason)
                logger.warning(
                    "booking rejected external_booking_id=%s payment_id=%s payment_status=%s",
                    data.booking_id,
                    data.metadata.payment_id,
                    payment_status,
                )
            db.commit()
            logger.info("booking recorded booking_id=%s status=%s", booking.id, booking.status)
            return BookingWebhookResult(
                trigger_event=event.trigger_event, booking_id=booking.id, status=booking.status, created=True
            )

    def _find(self, db, ref: BookingReference) -> BookingRecord | None:
        clauses = []
        if ref.booking_id is not None:
            clauses.append(BookingRecord.external_booking_id == ref.booking_id)
        if ref.uid:
            clauses.append(BookingRecord.external_uid == ref.uid)
        if not clauses:
            raise ValidationError("booking reference needs bookingId or uid")
        return db.execute(select(BookingRecord).where(or_(*clauses)).limit(1)).scalar_one_or_none()

    def _status_change(
        self, trigger_event: str, ref: BookingReference, target: BookingStatus, reason: str
    ) -> BookingWebhookResult:
        with self.session_factory() as db:
            booking = self._find(db, ref)
            if booking is None:
                logger.info("%s for unknown booking ignored booking_id=%s uid=%s", trigger_event, ref.booking_id, ref.uid)
                return BookingWebhookResult(trigger_event=trigger_event)
            if booking.status == target.value:
                return BookingWebhookResult(
                    trigger_event=trigger_event, booking_id=booking.id, status=booking.status, replayed=True
                )
            self._transition(db, booking, target, reason)
            db.commit()
            return BookingWebhookResult(trigger_event=trigger_event, booking_id=booking.id, status=booking.status)

    def transition(
        self, booking_id: str, new_status: str, reason: str, now: datetime | None = None
    ) -> BookingRecord | None:
        """Operator/host driven transition (start, complete, no-show, review...)."""

        try:
            target = BookingStatus(new_status)
        except ValueError as exc:
            raise ValidationError(f"unknown booking status {new_status}") from exc
        with self.session_factory() as db:
            booking = db.get(BookingRecord, booking_id)
            if booking is None:
                return None
            self._transition(
                db,
                booking,
                target,
                reason,
                now=now,
                payment_status=self._payment_status(db, booking.payment_ref),
            )
            db.commit()
            return booking

    def get_booking(self, booking_id: str) -> BookingRecord | None:
        with self.session_factory() as db:
            return db.get(BookingRecord, booking_id)
