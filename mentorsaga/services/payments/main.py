"""HTTP surface for Stripe webhooks and payment lookups."""

import asyncio
import time
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Request

from mentorsaga.common.config import settings
from mentorsaga.common.db import SessionLocal
from mentorsaga.common.errors import ReconciliationError, http_error
from mentorsaga.common.logging import configure_logging, trace_id_ctx
from mentorsaga.common.metrics import metrics_response, webhook_latency_seconds, webhooks_received_total
from mentorsaga.common.startup import log_startup_config
from mentorsaga.common.tracing import instrument_app, setup_tracing
from mentorsaga.services.payments.dispatcher import DeferredEffectDispatcher
from mentorsaga.services.payments.schemas import PaymentResponse
from mentorsaga.services.payments.service import PaymentIngestService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "KAFKA_BOOTSTRAP_SERVERS", "STRIPE_WEBHOOK_SECRET", "DISPUTE_PERIOD_HOURS"],
)
service = PaymentIngestService(SessionLocal, DeferredEffectDispatcher(SessionLocal))


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher for dispatched checkout effects."""

    publisher_task = asyncio.create_task(service.dispatcher.run_publisher())
    yield
    publisher_task.cancel()
    await service.dispatcher.close()


app = FastAPI(title="MentorSaga Payments", lifespan=lifespan)
instrument_app(app)


@app.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    """Verify and ingest one Stripe delivery; 5xx only when Stripe should retry."""

    trace_id = x_trace_id or str(uuid4())
    trace_id_ctx.set(trace_id)
    payload = await request.body()
    started = time.perf_counter()
    try:
        result = service.ingest(payload, stripe_signature, trace_id)
    except ReconciliationError as exc:
        webhooks_received_total.labels(
            service=settings.service_name, source="stripe", outcome=type(exc).__name__
        ).inc()
        raise http_error(exc) from exc
    finally:
        webhook_latency_seconds.labels(service=settings.service_name, source="stripe").observe(
            time.perf_counter() - started
        )
    outcome = "replayed" if result.replayed else "accepted"
    webhooks_received_total.labels(service=settings.service_name, source="stripe", outcome=outcome).inc()
    return result.as_response()


@app.get("/payments/{payment_id}", response_model=PaymentResponse)
def get_payment(payment_id: str):
    """Fetch the platform status for one payment."""

    payment = service.get_payment(payment_id)
    if not payment:
        raise HTTPException(status_code=404, detail="payment not found")
    return PaymentResponse(
        payment_id=payment.id,
        platform_status=payment.platform_status,
        external_status=payment.external_status,
    )


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
