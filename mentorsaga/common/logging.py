"""JSON logs carrying saga correlation ids.

Every record gets the service name plus whatever trace, event, payment and
mentor ids are bound in the current context, so one grep on `payment_id`
follows a payment from webhook to booking, refund or payout.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from mentorsaga.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")
payment_id_ctx: ContextVar[str] = ContextVar("payment_id", default="")
mentor_id_ctx: ContextVar[str] = ContextVar("mentor_id", default="")

CORRELATION_FIELDS = {
    "trace_id": trace_id_ctx,
    "event_id": event_id_ctx,
    "payment_id": payment_id_ctx,
    "mentor_id": mentor_id_ctx,
}


class CorrelationFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for field, var in CORRELATION_FIELDS.items():
            setattr(record, field, var.get())
        return True


@contextmanager
def bound_context(**values: str | None):
    """Bind correlation ids for the duration of one webhook or event."""

    tokens = [(CORRELATION_FIELDS[field], CORRELATION_FIELDS[field].set(value or "")) for field, value in values.items()]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def configure_logging() -> None:
    """Send JSON records to stdout; call once per service process."""

    handler = logging.StreamHandler(sys.stdout)
    correlation = CorrelationFilter()
    handler.addFilter(correlation)
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s %(event_id)s "
            "%(payment_id)s %(mentor_id)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "ts"},
            static_fields={"app": "mentorsaga"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)


logger = logging.getLogger("mentorsaga")
