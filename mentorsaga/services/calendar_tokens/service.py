"""Scheduling OAuth token lifecycle.

A mentor's token pair is in one of three states:

* VALID            now < access expiry
* ACCESS_EXPIRED   access expiry <= now < refresh expiry
* REFRESH_EXPIRED  refresh expiry <= now

Refreshing is a two-stage policy, NORMAL then FORCED. The remote token service
may revoke a refresh token before its stated expiry, so any NORMAL rejection
falls through to FORCED; only a FORCED rejection is terminal. Each stage
produces a `RefreshAttempt` so callers can see why a refresh went the way it
did.

Refreshes for one mentor are single-flight across instances (Redis lock);
concurrent refreshes would otherwise invalidate each other's new token.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from redis.exceptions import LockError
from sqlalchemy import select, update

from mentorsaga.common.config import settings
from mentorsaga.common.db import ensure_utc, upsert
from mentorsaga.common.errors import (
    ReconciliationError,
    TerminalIntegrationError,
    TransientExternalError,
)
from mentorsaga.common.logging import logger
from mentorsaga.common.metrics import token_refresh_total
from mentorsaga.services.calendar_tokens.client import IssuedTokens, SchedulingClient
from mentorsaga.services.calendar_tokens.models import OAuthTokenRecord


class TokenState(str, Enum):
    VALID = "VALID"
    ACCESS_EXPIRED = "ACCESS_EXPIRED"
    REFRESH_EXPIRED = "REFRESH_EXPIRED"


class RefreshStage(str, Enum):
    NORMAL = "NORMAL"
    FORCED = "FORCED"


@dataclass(frozen=True)
class RefreshAttempt:
    stage: RefreshStage
    succeeded: bool
    error: str | None = None
    retryable: bool = False
    tokens: IssuedTokens | None = None


@dataclass
class RefreshOutcome:
    access_token: str
    attempts: list[RefreshAttempt] = field(default_factory=list)


def classify_token_state(record: OAuthTokenRecord, now: datetime) -> TokenState:
    if now < ensure_utc(record.access_token_expires_at):
        return TokenState.VALID
    if now < ensure_utc(record.refresh_token_expires_at):
        return TokenState.ACCESS_EXPIRED
    return TokenState.REFRESH_EXPIRED


class RedisRefreshLocks:
    """Per-mentor distributed lock factory backed by `redis.asyncio`."""

    def __init__(self, rdb) -> None:
        self.rdb = rdb

    def __call__(self, mentor_id: str):
        return self.rdb.lock(
            f"scheduling-token-refresh:{mentor_id}",
            timeout=settings.token_refresh_lock_timeout_seconds,
            blocking_timeout=settings.token_refresh_lock_wait_seconds,
        )


class TokenLifecycleManager:
    """Hands out a usable access token per mentor, refreshing when needed."""

    def __init__(
        self,
        session_factory,
        client: SchedulingClient,
        lock_factory,
        service_name: str = "calendar-tokens",
    ) -> None:
        self.session_factory = session_factory
        self.client = client
        self.lock_factory = lock_factory
        self.service_name = service_name

    def _load(self, mentor_id: str) -> OAuthTokenRecord:
        with self.session_factory() as db:
            record = db.execute(
                select(OAuthTokenRecord).where(OAuthTokenRecord.mentor_id == mentor_id)
            ).scalar_one_or_none()
        if record is None:
            raise TerminalIntegrationError(f"mentor {mentor_id} has no linked scheduling account")
        return record

    def token_state(self, mentor_id: str, now: datetime | None = None) -> TokenState:
        return classify_token_state(self._load(mentor_id), now or datetime.now(timezone.utc))

    def store_tokens(
        self,
        mentor_id: str,
        tokens: IssuedTokens,
        external_user_id: int,
        external_username: str,
    ) -> None:
        """Provisioning upsert: exactly one live record per mentor."""

        with self.session_factory() as db:
            upsert(
                db,
                OAuthTokenRecord,
                {
                    "id": str(uuid4()),
                    "mentor_id": mentor_id,
                    "access_token": tokens.access_token,
                    "refresh_token": tokens.refresh_token,
                    "access_token_expires_at": tokens.access_token_expires_at,
                    "refresh_token_expires_at": tokens.refresh_token_expires_at,
                    "external_user_id": external_user_id,
                    "external_username": external_username,
                },
                conflict_columns=["mentor_id"],
                update_columns=[
                    "access_token",
                    "refresh_token",
                    "access_token_expires_at",
                    "refresh_token_expires_at",
                    "external_user_id",
                    "external_username",
                ],
            )
            db.commit()
        logger.info("scheduling tokens stored mentor_id=%s", mentor_id)

    def _persist(self, mentor_id: str, tokens: IssuedTokens) -> None:
        with self.session_factory() as db:
            db.execute(
                update(OAuthTokenRecord)
                .where(OAuthTokenRecord.mentor_id == mentor_id)
                .values(
                    access_token=tokens.access_token,
                    refresh_token=tokens.refresh_token,
                    access_token_expires_at=tokens.access_token_expires_at,
                    refresh_token_expires_at=tokens.refresh_token_expires_at,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            db.commit()

    async def _attempt(self, stage: RefreshStage, call) -> RefreshAttempt:
        try:
            tokens = await call()
        except ReconciliationError as exc:
            token_refresh_total.labels(service=self.service_name, stage=stage.value, outcome="rejected").inc()
            logger.warning("scheduling token %s refresh failed: %s", stage.value.lower(), exc)
            return RefreshAttempt(stage=stage, succeeded=False, error=str(exc), retryable=exc.retryable)
        token_refresh_total.labels(service=self.service_name, stage=stage.value, outcome="succeeded").inc()
        return RefreshAttempt(stage=stage, succeeded=True, tokens=tokens)

    async def get_access_token(self, mentor_id: str) -> str:
        """Return a VALID access token, refreshing first when it is not."""

        record = self._load(mentor_id)
        if classify_token_state(record, datetime.now(timezone.utc)) is TokenState.VALID:
            return record.access_token
        outcome = await self.refresh(mentor_id)
        return outcome.access_token

    async def refresh(self, mentor_id: str, stale: bool = False) -> RefreshOutcome:
        """Run the NORMAL -> FORCED policy under the mentor's refresh lock.

        `stale=True` refreshes even a locally VALID token (the remote rejected it).
        """

        try:
            async with self.lock_factory(mentor_id):
                return await self._refresh_locked(mentor_id, stale)
        except LockError as exc:
            raise TransientExternalError(f"token refresh for mentor {mentor_id} is already in flight") from exc

    async def _refresh_locked(self, mentor_id: str, stale: bool) -> RefreshOutcome:
        # Re-read under the lock: another instance may have refreshed already.
        record = self._load(mentor_id)
        state = classify_token_state(record, datetime.now(timezone.utc))
        if state is TokenState.VALID and not stale:
            return RefreshOutcome(access_token=record.access_token)

        attempts: list[RefreshAttempt] = []
        if state is not TokenState.REFRESH_EXPIRED:
            attempts.append(
                await self._attempt(RefreshStage.NORMAL, lambda: self.client.refresh_tokens(record.refresh_token))
            )
        if not attempts or not attempts[-1].succeeded:
            attempts.append(
                await self._attempt(RefreshStage.FORCED, lambda: self.client.force_refresh(record.external_user_id))
            )

        final = attempts[-1]
        if not final.succeeded:
            if final.retryable:
                raise TransientExternalError(f"scheduling force refresh unavailable: {final.error}")
            logger.error("scheduling integration broken mentor_id=%s error=%s", mentor_id, final.error)
            raise TerminalIntegrationError(
                f"scheduling integration for mentor {mentor_id} needs re-authorization: {final.error}",
                attempts=attempts,
            )

        self._persist(mentor_id, final.tokens)
        logger.info(
            "scheduling tokens refreshed mentor_id=%s from_state=%s stages=%s",
            mentor_id,
            state.value,
            [attempt.stage.value for attempt in attempts],
        )
        return RefreshOutcome(access_token=final.tokens.access_token, attempts=attempts)
