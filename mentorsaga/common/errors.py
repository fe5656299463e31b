"""Error taxonomy shared by ingestors, workers, and external clients.

Every failure of an external call is classified into exactly one of these
classes. Only `TransientExternalError` maps to a status that makes an upstream
webhook sender (or our own consumer loop) retry.
"""

import httpx
import stripe
from fastapi import HTTPException


class ReconciliationError(Exception):
    """Base class carrying the HTTP status the error surfaces as."""

    status_code: int = 500
    retryable: bool = False


class ValidationError(ReconciliationError):
    """Malformed or incomplete payload; never retried by us."""

    status_code = 400


class AuthenticationError(ReconciliationError):
    """Missing or invalid webhook signature / API credentials."""

    status_code = 401


class TransientExternalError(ReconciliationError):
    """Timeout, transport failure or 5xx from a third party."""

    status_code = 503
    retryable = True


class TerminalIntegrationError(ReconciliationError):
    """Scheduling integration is broken until the mentor re-links the account."""

    status_code = 424

    def __init__(self, message: str, attempts: list | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts or []


class InvariantViolation(ReconciliationError):
    """Illegal state transition or unexpected duplicate key."""

    status_code = 409


def http_error(exc: ReconciliationError) -> HTTPException:
    """Map a classified error to the HTTP response FastAPI should send."""

    return HTTPException(status_code=exc.status_code, detail=str(exc))


def classify_http_error(exc: Exception, dependency: str) -> ReconciliationError:
    """Classify an httpx failure talking to `dependency`."""

    if isinstance(exc, httpx.TimeoutException):
        return TransientExternalError(f"{dependency} timed out")
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        body = exc.response.text[:300]
        if status >= 500 or status == 429:
            return TransientExternalError(f"{dependency} returned {status}: {body}")
        if status in (401, 403):
            return AuthenticationError(f"{dependency} rejected credentials ({status}): {body}")
        return ValidationError(f"{dependency} rejected request ({status}): {body}")
    if isinstance(exc, httpx.TransportError):
        return TransientExternalError(f"{dependency} unreachable: {exc}")
    return TransientExternalError(f"{dependency} call failed: {exc}")


def classify_stripe_error(exc: stripe.StripeError) -> ReconciliationError:
    """Classify a Stripe SDK error."""

    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return TransientExternalError(f"stripe unavailable: {exc.user_message or exc}")
    if isinstance(exc, stripe.AuthenticationError):
        return AuthenticationError(f"stripe rejected credentials: {exc.user_message or exc}")
    if isinstance(exc, stripe.InvalidRequestError):
        return ValidationError(f"stripe rejected request: {exc.user_message or exc}")
    if exc.http_status is not None and exc.http_status < 500:
        return ValidationError(f"stripe rejected request: {exc.user_message or exc}")
    return TransientExternalError(f"stripe error: {exc.user_message or exc}")
