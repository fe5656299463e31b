"""Thin async client for the scheduling service (Cal.com v2) endpoints we call.

Every failure leaves this module already classified (see `common.errors`).
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from mentorsaga.common.config import settings
from mentorsaga.common.errors import ValidationError, classify_http_error

DEFAULT_ACCESS_TTL = timedelta(hours=1)
DEFAULT_REFRESH_TTL = timedelta(days=365)


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime


@dataclass(frozen=True)
class CreatedBooking:
    booking_id: int
    uid: str


def _parse_expiry(value: Any, default_ttl: timedelta, now: datetime) -> datetime:
    """Expiries arrive as epoch milliseconds, ISO strings, or not at all."""

    if value is None:
        return now + default_ttl
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _success_data(resp: httpx.Response, dependency: str) -> dict:
    try:
        body = resp.json()
    except ValueError as exc:
        raise ValidationError(f"{dependency} returned a non-JSON body") from exc
    if not isinstance(body, dict) or body.get("status") != "success" or not isinstance(body.get("data"), dict):
        raise ValidationError(f"{dependency} returned non-success body: {str(body)[:300]}")
    return body["data"]


def _tokens_from(data: dict, dependency: str) -> IssuedTokens:
    if not data.get("accessToken") or not data.get("refreshToken"):
        raise ValidationError(f"{dependency} response is missing tokens")
    now = datetime.now(timezone.utc)
    try:
        access_expires = _parse_expiry(data.get("accessTokenExpiresAt"), DEFAULT_ACCESS_TTL, now)
        refresh_expires = _parse_expiry(data.get("refreshTokenExpiresAt"), DEFAULT_REFRESH_TTL, now)
    except (TypeError, ValueError, OverflowError, OSError) as exc:
        raise ValidationError(f"{dependency} returned an unreadable token expiry: {exc}") from exc
    return IssuedTokens(
        access_token=data["accessToken"],
        refresh_token=data["refreshToken"],
        access_token_expires_at=access_expires,
        refresh_token_expires_at=refresh_expires,
    )


class SchedulingClient:
    """OAuth refresh/force-refresh and booking creation against Cal.com."""

    def __init__(
        self,
        base_url: str | None = None,
        client_id: str | None = None,
        secret_key: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.base_url = (base_url or settings.calcom_api_url).rstrip("/")
        self.client_id = client_id if client_id is not None else settings.calcom_client_id
        self.secret_key = secret_key if secret_key is not None else settings.calcom_secret_key
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds or settings.calcom_timeout_seconds),
        )

    async def _post(self, path: str, dependency: str, **kwargs) -> dict:
        try:
            resp = await self._http.post(path, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise classify_http_error(exc, dependency) from exc
        return _success_data(resp, dependency)

    async def refresh_tokens(self, refresh_token: str) -> IssuedTokens:
        """Normal refresh using the mentor's own refresh token."""

        data = await self._post(
            f"/oauth/{self.client_id}/refresh",
            "scheduling token refresh",
            headers={"x-cal-secret-key": self.secret_key},
            json={"refreshToken": refresh_token},
        )
        return _tokens_from(data, "scheduling token refresh")

    async def force_refresh(self, external_user_id: int) -> IssuedTokens:
        """Privileged reissue of both tokens using server-held client credentials."""

        data = await self._post(
            f"/oauth-clients/{self.client_id}/users/{external_user_id}/force-refresh",
            "scheduling force refresh",
            headers={"x-cal-secret-key": self.secret_key},
            json={},
        )
        return _tokens_from(data, "scheduling force refresh")

    async def create_booking(
        self,
        access_token: str,
        *,
        event_type_id: int,
        start: datetime,
        attendee_name: str,
        attendee_email: str,
        time_zone: str,
        attendee_phone: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> CreatedBooking:
        attendee = {
            "name": attendee_name,
            "email": attendee_email,
            "timeZone": time_zone,
            "language": "en",
        }
        if attendee_phone:
            attendee["phoneNumber"] = attendee_phone
        data = await self._post(
            "/bookings",
            "scheduling create booking",
            headers={
                "Authorization": f"Bearer {access_token}",
                "cal-api-version": settings.calcom_api_version,
            },
            json={
                "start": start.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
                "eventTypeId": event_type_id,
                "attendee": attendee,
                "metadata": metadata or {},
            },
        )
        if "id" not in data or not data.get("uid"):
            raise ValidationError("scheduling create booking response is missing id/uid")
        try:
            booking_id = int(data["id"])
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"scheduling create booking returned a non-numeric id: {data['id']!r}") from exc
        return CreatedBooking(booking_id=booking_id, uid=str(data["uid"]))

    async def aclose(self) -> None:
        await self._http.aclose()
