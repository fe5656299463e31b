"""Notification consumer for saga outcomes that a person has to hear about."""

import asyncio

from mentorsaga.common.config import settings
from mentorsaga.common.events import EventEnvelope, consume_forever
from mentorsaga.common.logging import logger
from mentorsaga.common.metrics import duplicate_events_skipped_total
from mentorsaga.common.outbox import inbox_seen, mark_inbox
from mentorsaga.services.notification.models import NotificationLog

BOOKING_FAILED = "booking_failed"
MANUAL_REFUND_REQUIRED = "manual_refund_required"
MANUAL_RECONCILIATION_REQUIRED = "manual_reconciliation_required"
PAYOUT_FAILED = "payout_failed"


def _format_amount(amount: int | None, currency: str | None) -> str:
    if amount is None:
        return "unknown amount"
    return f"{amount / 100:.2f} {(currency or 'USD').upper()}"


class NotificationService:
    """Writes notification logs for failed bookings and admin alerts."""

    def __init__(self, session_factory, service_name: str = "notification", admin_email: str | None = None) -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.admin_email = admin_email or settings.admin_alert_email

    def _messages(self, event: EventEnvelope) -> list[NotificationLog]:
        payload = event.payload
        payment_id = payload.get("payment_id", event.aggregate_id)
        amount = _format_amount(payload.get("amount"), payload.get("currency"))

        if event.event_type == "booking.compensated":
            logs = [
                NotificationLog(
                    payment_id=payment_id,
                    kind=BOOKING_FAILED,
                    channel="email",
                    recipient=payload.get("customer_email") or "",
                    message=payload.get("message") or "Failed to create booking.",
                )
            ]
            if not payload.get("refunded"):
                logs.append(
                    NotificationLog(
                        payment_id=payment_id,
                        kind=MANUAL_REFUND_REQUIRED,
                        channel="email",
                        recipient=self.admin_email,
                        message=(
                            f"Booking failed for payment {payment_id} and the automatic refund of {amount} "
                            f"did not go through: {payload.get('refund_error') or 'unknown error'}"
                        ),
                    )
                )
            return logs
        if event.event_type == "saga.manual_review":
            return [
                NotificationLog(
                    payment_id=payment_id,
                    kind=MANUAL_RECONCILIATION_REQUIRED,
                    channel="email",
                    recipient=self.admin_email,
                    message=(
                        f"Payment {payment_id} ({amount}) has a booking attempt with no recorded result "
                        f"({payload.get('reason')}); check the scheduling service before refunding."
                    ),
                )
            ]
        if event.event_type == "payout.failed":
            return [
                NotificationLog(
                    payment_id=payment_id,
                    kind=PAYOUT_FAILED,
                    channel="email",
                    recipient=self.admin_email,
                    message=(
                        f"Payout of {amount} to mentor {payload.get('mentor_id')} failed after "
                        f"{payload.get('attempts')} attempts: {payload.get('error')}"
                    ),
                )
            ]
        logger.warning("no notification for event_type=%s", event.event_type)
        return []

    async def handle_event(self, event: EventEnvelope) -> None:
        """Persist notification logs, skipping duplicate events safely."""

        with self.session_factory() as db:
            if inbox_seen(db, event.event_id, self.service_name):
                logger.info("duplicate event skipped topic=%s event_id=%s", event.event_type, event.event_id)
                duplicate_events_skipped_total.labels(service=self.service_name, topic=event.event_type).inc()
                return
            logs = self._messages(event)
            for log in logs:
                db.add(log)
            mark_inbox(db, event.event_id, self.service_name)
            db.commit()
        for log in logs:
            logger.info("notification queued kind=%s recipient=%s payment_id=%s", log.kind, log.recipient, log.payment_id)

    async def start_consumers(self) -> None:
        await asyncio.gather(
            consume_forever("booking.compensated", "notification-booking-compensated", self.handle_event),
            consume_forever("saga.manual_review", "notification-manual-review", self.handle_event),
            consume_forever("payout.failed", "notification-payout-failed", self.handle_event),
        )
