"""Notification service lifecycle and lightweight read endpoints."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy import select

from mentorsaga.common.config import settings
from mentorsaga.common.db import SessionLocal
from mentorsaga.common.logging import configure_logging
from mentorsaga.common.metrics import metrics_response
from mentorsaga.common.startup import log_startup_config
from mentorsaga.common.tracing import instrument_app, setup_tracing
from mentorsaga.services.notification.models import NotificationLog
from mentorsaga.services.notification.service import NotificationService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "KAFKA_BOOTSTRAP_SERVERS", "ADMIN_ALERT_EMAIL"],
)
service = NotificationService(SessionLocal)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run consumer loop with FastAPI application lifecycle."""

    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    consumer_task.cancel()


app = FastAPI(title="MentorSaga Notification Service", lifespan=lifespan)
instrument_app(app)


@app.get("/notifications/{payment_id}")
def list_notifications(payment_id: str):
    """Notifications recorded for one payment, oldest first."""

    with SessionLocal() as db:
        rows = (
            db.execute(
                select(NotificationLog)
                .where(NotificationLog.payment_id == payment_id)
                .order_by(NotificationLog.created_at)
            )
            .scalars()
            .all()
        )
        return {
            "items": [
                {"kind": row.kind, "channel": row.channel, "recipient": row.recipient, "message": row.message}
                for row in rows
            ]
        }


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
