"""Booking reconciliation worker process plus saga inspection endpoints."""

import asyncio
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Header, HTTPException

from mentorsaga.common.config import settings
from mentorsaga.common.db import SessionLocal
from mentorsaga.common.logging import configure_logging
from mentorsaga.common.metrics import metrics_response
from mentorsaga.common.startup import log_startup_config
from mentorsaga.common.tracing import instrument_app, setup_tracing
from mentorsaga.services.calendar_tokens.client import SchedulingClient
from mentorsaga.services.calendar_tokens.service import RedisRefreshLocks, TokenLifecycleManager
from mentorsaga.services.reconciliation.gateway import StripeGateway, configure_stripe
from mentorsaga.services.reconciliation.payouts import PayoutSweeper
from mentorsaga.services.reconciliation.service import BookingReconciliationWorker

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "KAFKA_BOOTSTRAP_SERVERS",
        "REDIS_URL",
        "STRIPE_SECRET_KEY",
        "CALCOM_API_URL",
        "PAYOUT_SWEEP_INTERVAL_SECONDS",
    ],
)
configure_stripe()
scheduling_client = SchedulingClient()
gateway = StripeGateway()
service = BookingReconciliationWorker(
    SessionLocal,
    TokenLifecycleManager(
        SessionLocal,
        scheduling_client,
        RedisRefreshLocks(aioredis.Redis.from_url(settings.redis_url)),
        service_name=settings.service_name,
    ),
    scheduling_client,
    gateway,
    service_name=settings.service_name,
)
payouts = PayoutSweeper(SessionLocal, gateway, service_name=settings.service_name)


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher, the checkout consumer and the payout sweep."""

    tasks = [
        asyncio.create_task(service.outbox_publisher()),
        asyncio.create_task(service.start_consumers()),
        asyncio.create_task(payouts.run_forever()),
    ]
    yield
    for task in tasks:
        task.cancel()
    await service.kafka.close()
    await scheduling_client.aclose()


app = FastAPI(title="MentorSaga Reconciliation", lifespan=lifespan)
instrument_app(app)


@app.get("/sagas/stuck")
def stuck_sagas(older_than_minutes: int | None = None, x_api_key: str | None = Header(default=None)):
    """Captured payments whose saga has not reached a terminal step."""

    enforce_api_key(x_api_key)
    return {"items": service.stuck_sagas(older_than_minutes or settings.stuck_saga_after_minutes)}


@app.get("/sagas/{payment_id}")
def get_saga(payment_id: str, x_api_key: str | None = Header(default=None)):
    """Step log for one payment's saga."""

    enforce_api_key(x_api_key)
    view = service.saga_view(payment_id)
    if view is None:
        raise HTTPException(status_code=404, detail="payment not found")
    return view


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
