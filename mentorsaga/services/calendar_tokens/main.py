"""HTTP surface for scheduling-account token provisioning and refresh."""

from contextlib import asynccontextmanager
from datetime import datetime

import redis
import redis.asyncio as aioredis
from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

from mentorsaga.common.config import settings
from mentorsaga.common.db import SessionLocal
from mentorsaga.common.errors import ReconciliationError, http_error
from mentorsaga.common.logging import configure_logging, mentor_id_ctx
from mentorsaga.common.metrics import metrics_response
from mentorsaga.common.ratelimit import enforce_token_bucket
from mentorsaga.common.startup import log_startup_config
from mentorsaga.common.tracing import instrument_app, setup_tracing
from mentorsaga.services.calendar_tokens.client import IssuedTokens, SchedulingClient
from mentorsaga.services.calendar_tokens.service import RedisRefreshLocks, TokenLifecycleManager

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "REDIS_URL", "CALCOM_API_URL", "CALCOM_CLIENT_ID", "CALCOM_SECRET_KEY"],
)
rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)
service = TokenLifecycleManager(
    SessionLocal,
    SchedulingClient(),
    RedisRefreshLocks(aioredis.Redis.from_url(settings.redis_url)),
)


class TokenProvisionRequest(BaseModel):
    """Token pair issued when a mentor's scheduling account is created/linked."""

    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    external_user_id: int
    external_username: str = Field(min_length=1)


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    await service.client.aclose()


app = FastAPI(title="MentorSaga Scheduling Tokens", lifespan=lifespan)
instrument_app(app)


@app.put("/oauth/{mentor_id}/tokens")
def provision_tokens(mentor_id: str, req: TokenProvisionRequest, x_api_key: str | None = Header(default=None)):
    """Upsert the mentor's token pair (account provisioning / re-link)."""

    enforce_api_key(x_api_key)
    service.store_tokens(
        mentor_id,
        IssuedTokens(
            access_token=req.access_token,
            refresh_token=req.refresh_token,
            access_token_expires_at=req.access_token_expires_at,
            refresh_token_expires_at=req.refresh_token_expires_at,
        ),
        external_user_id=req.external_user_id,
        external_username=req.external_username,
    )
    return {"mentor_id": mentor_id, "state": service.token_state(mentor_id).value}


@app.get("/oauth/{mentor_id}/access-token")
async def access_token(mentor_id: str, stale: bool = False, x_api_key: str | None = Header(default=None)):
    """Return a usable access token; `stale=true` when the remote just rejected ours."""

    enforce_api_key(x_api_key)
    enforce_token_bucket(rdb, f"token-refresh:{mentor_id}", settings.rate_limit_per_minute)
    mentor_id_ctx.set(mentor_id)
    try:
        if stale:
            outcome = await service.refresh(mentor_id, stale=True)
            token = outcome.access_token
        else:
            token = await service.get_access_token(mentor_id)
    except ReconciliationError as exc:
        raise http_error(exc) from exc
    return {"accessToken": token}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
