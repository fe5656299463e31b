"""Scheduling-side booking records and their transition audit trail.

Bookings are created only by the scheduling webhook; the reconciliation worker
never writes them.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from mentorsaga.common.db import Base, JSONType
from mentorsaga.services.payments.models import PaymentRecord  # noqa: F401  (registers the FK target)


class BookingRecord(Base):
    """Current state of one scheduling-service booking."""

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    external_booking_id: Mapped[int] = mapped_column(Integer, unique=True, index=True)
    external_uid: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    title: Mapped[str] = mapped_column(String(512))
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String, index=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    event_type_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payment_ref: Mapped[str | None] = mapped_column(ForeignKey("payments.id"), nullable=True, index=True)
    is_free: Mapped[bool] = mapped_column(Boolean, default=False)
    attendees: Mapped[list] = mapped_column(JSONType, default=list)
    organizer: Mapped[dict] = mapped_column(JSONType, default=dict)
    webhook_payload: Mapped[dict] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class BookingTimeline(Base):
    """Immutable audit trail of every booking status transition."""

    __tablename__ = "booking_timeline"

    timeline_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    booking_id: Mapped[str] = mapped_column(ForeignKey("bookings.id"), index=True)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
