"""Every external failure lands in exactly one error class."""

import httpx
import pytest
import stripe

from mentorsaga.common.errors import (
    AuthenticationError,
    TransientExternalError,
    ValidationError,
    classify_http_error,
    classify_stripe_error,
    http_error,
)
from mentorsaga.services.scheduling.signatures import compute_signature, verify_signature


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://cal.test/v2/bookings")
    response = httpx.Response(status, request=request, text="nope")
    return httpx.HTTPStatusError("failed", request=request, response=response)


@pytest.mark.parametrize(
    "exc, expected",
    [
        (httpx.ReadTimeout("slow"), TransientExternalError),
        (httpx.ConnectError("refused"), TransientExternalError),
        (_status_error(502), TransientExternalError),
        (_status_error(429), TransientExternalError),
        (_status_error(401), AuthenticationError),
        (_status_error(422), ValidationError),
    ],
)
def test_http_errors_are_classified(exc, expected):
    assert type(classify_http_error(exc, "scheduling")) is expected


def test_stripe_errors_are_classified():
    assert isinstance(classify_stripe_error(stripe.APIConnectionError("down")), TransientExternalError)
    assert isinstance(classify_stripe_error(stripe.InvalidRequestError("bad", "payment_intent")), ValidationError)


def test_only_transient_errors_map_to_server_errors():
    assert http_error(TransientExternalError("x")).status_code == 503
    assert http_error(ValidationError("x")).status_code == 400
    assert http_error(AuthenticationError("x")).status_code == 401


def test_scheduling_signature_verification():
    body = b'{"triggerEvent":"BOOKING_CREATED"}'
    verify_signature("secret", body, compute_signature("secret", body))
    with pytest.raises(AuthenticationError):
        verify_signature("secret", body, compute_signature("other", body))
    with pytest.raises(AuthenticationError):
        verify_signature("", body, compute_signature("", body))
