"""Scheduling webhook payloads, tagged by `triggerEvent`."""

from datetime import datetime
from typing import Annotated, Any, Literal, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from mentorsaga.common.errors import ValidationError
from mentorsaga.services.payments.schemas import describe_validation_error


class BookingMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    payment_id: str | None = Field(default=None, alias="paymentId")


class CreatedBookingPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    booking_id: int = Field(alias="bookingId")
    uid: str = Field(min_length=1)
    title: str = ""
    start_time: datetime = Field(alias="startTime")
    end_time: datetime = Field(alias="endTime")
    event_type_id: int | None = Field(default=None, alias="eventTypeId")
    organizer: dict[str, Any] = Field(default_factory=dict)
    attendees: list[dict[str, Any]] = Field(default_factory=list)
    metadata: BookingMetadata = Field(default_factory=BookingMetadata)
    price: int | None = None


class BookingReference(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    booking_id: int | None = Field(default=None, alias="bookingId")
    uid: str | None = None
    cancellation_reason: str | None = Field(default=None, alias="cancellationReason")
    rejection_reason: str | None = Field(default=None, alias="rejectionReason")


class BookingCreated(BaseModel):
    trigger_event: Literal["BOOKING_CREATED"] = Field(alias="triggerEvent")
    created_at: datetime | None = Field(default=None, alias="createdAt")
    payload: CreatedBookingPayload


class BookingCancelled(BaseModel):
    trigger_event: Literal["BOOKING_CANCELLED"] = Field(alias="triggerEvent")
    created_at: datetime | None = Field(default=None, alias="createdAt")
    payload: BookingReference


class BookingRejected(BaseModel):
    trigger_event: Literal["BOOKING_REJECTED"] = Field(alias="triggerEvent")
    created_at: datetime | None = Field(default=None, alias="createdAt")
    payload: BookingReference


SchedulingEvent = Annotated[
    Union[BookingCreated, BookingCancelled, BookingRejected],
    Field(discriminator="trigger_event"),
]
_scheduling_event_adapter = TypeAdapter(SchedulingEvent)


def parse_scheduling_event(raw: Any) -> BookingCreated | BookingCancelled | BookingRejected:
    try:
        return _scheduling_event_adapter.validate_python(raw)
    except pydantic.ValidationError as exc:
        raise ValidationError(describe_validation_error(exc)) from exc


class TransitionRequest(BaseModel):
    status: str
    reason: str = Field(default="ops_request", min_length=1)


class BookingResponse(BaseModel):
    booking_id: str
    external_booking_id: int
    external_uid: str
    status: str
    payment_ref: str | None
    start_time: datetime
    end_time: datetime
    state_version: int
