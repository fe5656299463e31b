"""Payment webhook payloads and the dispatched checkout event.

Inbound Stripe events are a tagged union keyed by `type`; anything that does
not match one of the known shapes is rejected before any field is read.
"""

from datetime import datetime
from typing import Annotated, Literal, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from mentorsaga.common.errors import ValidationError


class CheckoutMetadata(BaseModel):
    """Flat metadata map attached to the checkout session by the booking page."""

    model_config = ConfigDict(populate_by_name=True)

    mentor_id: str = Field(alias="mentorUserId", min_length=1)
    event_type_id: int = Field(alias="eventTypeId")
    start_time: datetime = Field(alias="startTime")
    attendee_name: str = Field(alias="attendeeName", min_length=1)
    attendee_email: str = Field(alias="attendeeEmail", min_length=3)
    attendee_phone: str | None = Field(default=None, alias="attendeePhone")
    attendee_time_zone: str = Field(alias="attendeeTimeZone", min_length=1)
    mentor_username: str = Field(alias="mentorUsername", min_length=1)
    mentor_fee: int = Field(alias="mentorFee", ge=0)
    mentee_fee: int = Field(alias="menteeFee", ge=0)
    mentor_amount: int = Field(alias="mentorAmount", ge=0)
    mentor_stripe_account_id: str = Field(alias="mentorStripeAccountId", min_length=1)


class CustomerDetails(BaseModel):
    email: str | None = None
    name: str | None = None


class CheckoutSession(BaseModel):
    id: str = Field(min_length=1)
    payment_intent: str = Field(min_length=1)
    amount_total: int = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    status: str = "complete"
    payment_status: str | None = None
    customer_details: CustomerDetails | None = None
    metadata: CheckoutMetadata


class CheckoutSessionData(BaseModel):
    object: CheckoutSession


class CheckoutSessionCompleted(BaseModel):
    id: str
    type: Literal["checkout.session.completed"]
    data: CheckoutSessionData


class ExpiredSession(BaseModel):
    id: str


class ExpiredSessionData(BaseModel):
    object: ExpiredSession


class CheckoutSessionExpired(BaseModel):
    id: str
    type: Literal["checkout.session.expired"]
    data: ExpiredSessionData


class RefundedCharge(BaseModel):
    id: str
    payment_intent: str = Field(min_length=1)
    amount_refunded: int = Field(ge=0)


class RefundedChargeData(BaseModel):
    object: RefundedCharge


class ChargeRefunded(BaseModel):
    id: str
    type: Literal["charge.refunded"]
    data: RefundedChargeData


StripeEvent = Annotated[
    Union[CheckoutSessionCompleted, CheckoutSessionExpired, ChargeRefunded],
    Field(discriminator="type"),
]
_stripe_event_adapter = TypeAdapter(StripeEvent)


def describe_validation_error(exc: pydantic.ValidationError) -> str:
    """Collapse pydantic errors into one line naming the offending fields."""

    missing = []
    invalid = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        if error["type"] == "missing":
            missing.append(location)
        else:
            invalid.append(f"{location} ({error['msg']})")
    parts = []
    if missing:
        parts.append("missing required fields: " + ", ".join(missing))
    if invalid:
        parts.append("invalid fields: " + ", ".join(invalid))
    return "; ".join(parts) or str(exc)


def parse_stripe_event(raw: dict) -> CheckoutSessionCompleted | CheckoutSessionExpired | ChargeRefunded:
    try:
        return _stripe_event_adapter.validate_python(raw)
    except pydantic.ValidationError as exc:
        raise ValidationError(describe_validation_error(exc)) from exc


class CheckoutDispatch(BaseModel):
    """Payload handed to the dispatcher after a fresh payment insert."""

    payment_id: str
    payment_intent_id: str
    checkout_session_id: str
    amount: int
    currency: str
    metadata: CheckoutMetadata


class PaymentResponse(BaseModel):
    payment_id: str
    platform_status: str
    external_status: str
