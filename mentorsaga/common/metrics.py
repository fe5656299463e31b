"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


webhooks_received_total = Counter(
    "webhooks_received_total",
    "Inbound webhook deliveries by source and outcome",
    ["service", "source", "outcome"],
)
webhook_latency_seconds = Histogram(
    "webhook_latency_seconds",
    "Inbound webhook handling latency seconds",
    ["service", "source"],
)
bookings_created_total = Counter("bookings_created_total", "Scheduling bookings created", ["service"])
booking_failures_total = Counter(
    "booking_failures_total",
    "Scheduling booking creation failures by error class",
    ["service", "error_type"],
)
refunds_total = Counter("refunds_total", "Compensating refunds by outcome", ["service", "outcome"])
token_refresh_total = Counter(
    "token_refresh_total",
    "Scheduling token refresh attempts by stage and outcome",
    ["service", "stage", "outcome"],
)
payouts_total = Counter("payouts_total", "Mentor payout transfers by outcome", ["service", "outcome"])
booking_transitions_total = Counter(
    "booking_transitions_total",
    "Booking status transitions",
    ["service", "from_state", "to_state"],
)
saga_e2e_seconds = Histogram(
    "saga_e2e_seconds",
    "Seconds from payment capture to booking or compensation outcome",
    ["service", "outcome"],
)
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds",
    "Event queue delay seconds between occurred_at and consume time",
    ["service", "topic"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
dlq_published_total = Counter(
    "dlq_published_total",
    "Total DLQ events published",
    ["service", "topic", "error_type"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate inbox events skipped",
    ["service", "topic"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
