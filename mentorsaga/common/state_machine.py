"""Booking and payment state machines.

Booking transitions carry guards; payment status only ever moves forward.
"""

from datetime import datetime, timedelta
from enum import Enum

from mentorsaga.common.db import ensure_utc
from mentorsaga.common.errors import InvariantViolation


class BookingStatus(str, Enum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    REJECTED = "REJECTED"
    NO_SHOW = "NO_SHOW"
    REVIEWED = "REVIEWED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    DISPUTED = "DISPUTED"
    REFUNDED = "REFUNDED"
    TRANSFERRED = "TRANSFERRED"


TERMINAL_BOOKING_STATES = frozenset(
    {BookingStatus.CANCELLED, BookingStatus.EXPIRED, BookingStatus.REJECTED, BookingStatus.REVIEWED}
)

ALLOWED_BOOKING_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PENDING_PAYMENT: {
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
        BookingStatus.EXPIRED,
        BookingStatus.REJECTED,
    },
    BookingStatus.CONFIRMED: {BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED, BookingStatus.NO_SHOW},
    BookingStatus.IN_PROGRESS: {BookingStatus.COMPLETED},
    BookingStatus.COMPLETED: {BookingStatus.REVIEWED},
    # A host can flag a no-show early; the attendee may still join inside the window.
    BookingStatus.NO_SHOW: {BookingStatus.IN_PROGRESS},
    BookingStatus.CANCELLED: set(),
    BookingStatus.EXPIRED: set(),
    BookingStatus.REJECTED: set(),
    BookingStatus.REVIEWED: set(),
}

ALLOWED_PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {PaymentStatus.PROCESSING, PaymentStatus.SUCCEEDED, PaymentStatus.FAILED},
    PaymentStatus.PROCESSING: {PaymentStatus.SUCCEEDED, PaymentStatus.FAILED},
    PaymentStatus.SUCCEEDED: {
        PaymentStatus.FAILED,
        PaymentStatus.DISPUTED,
        PaymentStatus.REFUNDED,
        PaymentStatus.TRANSFERRED,
    },
    PaymentStatus.FAILED: {PaymentStatus.REFUNDED},
    PaymentStatus.DISPUTED: {PaymentStatus.REFUNDED, PaymentStatus.TRANSFERRED},
    PaymentStatus.REFUNDED: set(),
    PaymentStatus.TRANSFERRED: set(),
}


def validate_booking_transition(
    current: str,
    new: str,
    *,
    start_time: datetime | None = None,
    now: datetime | None = None,
    payment_status: str | None = None,
    is_free: bool = False,
    window: timedelta = timedelta(minutes=15),
) -> None:
    """Raise `InvariantViolation` unless `current -> new` is legal and its guard holds."""

    try:
        current_state = BookingStatus(current)
        new_state = BookingStatus(new)
    except ValueError as exc:
        raise InvariantViolation(f"Invalid booking transition: {current} -> {new} (unknown state)") from exc

    if new_state not in ALLOWED_BOOKING_TRANSITIONS[current_state]:
        raise InvariantViolation(f"Invalid booking transition: {current_state.value} -> {new_state.value}")

    if current_state is BookingStatus.PENDING_PAYMENT and new_state is BookingStatus.CONFIRMED:
        if not is_free and payment_status != PaymentStatus.SUCCEEDED.value:
            raise InvariantViolation(
                f"Invalid booking transition: {current_state.value} -> {new_state.value} "
                f"(payment status is {payment_status or 'missing'})"
            )

    if new_state is BookingStatus.IN_PROGRESS:
        if start_time is None or now is None:
            raise InvariantViolation(
                f"Invalid booking transition: {current_state.value} -> {new_state.value} (start time unknown)"
            )
        if abs(now - ensure_utc(start_time)) > window:
            raise InvariantViolation(
                f"Invalid booking transition: {current_state.value} -> {new_state.value} "
                f"(outside the {int(window.total_seconds() // 60)} minute start window)"
            )


def validate_payment_transition(current: str, new: str) -> None:
    """Raise when a payment status would move backwards or sideways."""

    if PaymentStatus(new) not in ALLOWED_PAYMENT_TRANSITIONS.get(PaymentStatus(current), set()):
        raise InvariantViolation(f"Invalid payment transition: {current} -> {new}")
