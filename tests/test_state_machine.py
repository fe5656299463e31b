"""Unit tests for booking and payment state-machine guardrails."""

from datetime import datetime, timedelta, timezone

import pytest

from mentorsaga.common.errors import InvariantViolation
from mentorsaga.common.state_machine import (
    ALLOWED_BOOKING_TRANSITIONS,
    TERMINAL_BOOKING_STATES,
    validate_booking_transition,
    validate_payment_transition,
)

START = datetime(2030, 1, 15, 15, 0, tzinfo=timezone.utc)


def test_confirm_with_settled_payment():
    validate_booking_transition("PENDING_PAYMENT", "CONFIRMED", payment_status="SUCCEEDED")


def test_confirm_free_event_without_payment():
    validate_booking_transition("PENDING_PAYMENT", "CONFIRMED", is_free=True)


def test_confirm_rejected_when_payment_not_settled():
    with pytest.raises(InvariantViolation, match="PENDING_PAYMENT -> CONFIRMED"):
        validate_booking_transition("PENDING_PAYMENT", "CONFIRMED", payment_status="FAILED")


def test_invalid_transition_names_both_states():
    """Illegal transition must raise to protect booking correctness."""

    with pytest.raises(InvariantViolation, match="Invalid booking transition: CONFIRMED -> COMPLETED"):
        validate_booking_transition("CONFIRMED", "COMPLETED")


def test_completed_from_pending_payment_names_both_states():
    with pytest.raises(InvariantViolation, match="Invalid booking transition: PENDING_PAYMENT -> COMPLETED") as excinfo:
        validate_booking_transition("PENDING_PAYMENT", "COMPLETED", payment_status="SUCCEEDED")

    message = str(excinfo.value)
    assert "PENDING_PAYMENT" in message
    assert "COMPLETED" in message


def test_terminal_states_have_no_exits():
    for state in TERMINAL_BOOKING_STATES:
        assert ALLOWED_BOOKING_TRANSITIONS[state] == set()
        with pytest.raises(InvariantViolation):
            validate_booking_transition(state.value, "CONFIRMED", payment_status="SUCCEEDED")


def test_in_progress_only_inside_start_window():
    validate_booking_transition("CONFIRMED", "IN_PROGRESS", start_time=START, now=START - timedelta(minutes=15))
    validate_booking_transition("CONFIRMED", "IN_PROGRESS", start_time=START, now=START + timedelta(minutes=10))
    with pytest.raises(InvariantViolation, match="start window"):
        validate_booking_transition("CONFIRMED", "IN_PROGRESS", start_time=START, now=START - timedelta(minutes=16))


def test_no_show_can_still_start_late():
    validate_booking_transition("NO_SHOW", "IN_PROGRESS", start_time=START, now=START + timedelta(minutes=12))


def test_completed_has_no_timing_check():
    validate_booking_transition("IN_PROGRESS", "COMPLETED", start_time=START, now=START + timedelta(days=3))


def test_unknown_state_rejected():
    with pytest.raises(InvariantViolation):
        validate_booking_transition("PENDING_PAYMENT", "ARCHIVED")


def test_payment_status_only_moves_forward():
    validate_payment_transition("SUCCEEDED", "FAILED")
    validate_payment_transition("FAILED", "REFUNDED")
    validate_payment_transition("SUCCEEDED", "TRANSFERRED")
    for current, new in [("REFUNDED", "SUCCEEDED"), ("TRANSFERRED", "REFUNDED"), ("FAILED", "SUCCEEDED")]:
        with pytest.raises(InvariantViolation):
            validate_payment_transition(current, new)
