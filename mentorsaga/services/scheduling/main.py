"""HTTP surface for scheduling webhooks and booking state."""

import time

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from mentorsaga.common.config import settings
from mentorsaga.common.db import SessionLocal
from mentorsaga.common.errors import ReconciliationError, http_error
from mentorsaga.common.logging import configure_logging
from mentorsaga.common.metrics import metrics_response, webhook_latency_seconds, webhooks_received_total
from mentorsaga.common.startup import log_startup_config
from mentorsaga.common.tracing import instrument_app, setup_tracing
from mentorsaga.services.scheduling.models import BookingRecord
from mentorsaga.services.scheduling.schemas import BookingResponse, TransitionRequest
from mentorsaga.services.scheduling.service import BookingWebhookService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "CALCOM_WEBHOOK_SECRET", "IN_PROGRESS_WINDOW_MINUTES"],
)
service = BookingWebhookService(SessionLocal)

app = FastAPI(title="MentorSaga Scheduling")
instrument_app(app)


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def _booking_response(booking: BookingRecord) -> BookingResponse:
    return BookingResponse(
        booking_id=booking.id,
        external_booking_id=booking.external_booking_id,
        external_uid=booking.external_uid,
        status=booking.status,
        payment_ref=booking.payment_ref,
        start_time=booking.start_time,
        end_time=booking.end_time,
        state_version=booking.state_version,
    )


@app.post("/webhooks/scheduling")
async def scheduling_webhook(request: Request, x_cal_signature_256: str | None = Header(default=None)):
    """Verify and apply one scheduling delivery; 201 on first sight, 200 on replay."""

    payload = await request.body()
    started = time.perf_counter()
    try:
        result = service.ingest(payload, x_cal_signature_256)
    except ReconciliationError as exc:
        webhooks_received_total.labels(
            service=settings.service_name, source="scheduling", outcome=type(exc).__name__
        ).inc()
        raise http_error(exc) from exc
    finally:
        webhook_latency_seconds.labels(service=settings.service_name, source="scheduling").observe(
            time.perf_counter() - started
        )
    outcome = "replayed" if result.replayed else "accepted"
    webhooks_received_total.labels(service=settings.service_name, source="scheduling", outcome=outcome).inc()
    return JSONResponse(status_code=201 if result.created else 200, content=result.as_response())


@app.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(booking_id: str):
    """Fetch current state for one booking."""

    booking = service.get_booking(booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail="booking not found")
    return _booking_response(booking)


@app.post("/bookings/{booking_id}/transitions", response_model=BookingResponse)
def transition_booking(booking_id: str, req: TransitionRequest, x_api_key: str | None = Header(default=None)):
    """Apply a host/operator transition through the booking state machine."""

    enforce_api_key(x_api_key)
    try:
        booking = service.transition(booking_id, req.status, req.reason)
    except ReconciliationError as exc:
        raise http_error(exc) from exc
    if not booking:
        raise HTTPException(status_code=404, detail="booking not found")
    return _booking_response(booking)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
