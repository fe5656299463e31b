"""Persisted saga step log, one row per (payment, step)."""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from mentorsaga.common.db import Base, JSONType
from mentorsaga.services.payments.models import PaymentRecord  # noqa: F401  (registers the FK target)


class SagaStepName(str, Enum):
    PAYMENT_CAPTURED = "PAYMENT_CAPTURED"
    BOOKING_ATTEMPTED = "BOOKING_ATTEMPTED"
    BOOKING_SUCCEEDED = "BOOKING_SUCCEEDED"
    BOOKING_FAILED = "BOOKING_FAILED"
    COMPENSATION_SUCCEEDED = "COMPENSATION_SUCCEEDED"
    COMPENSATION_FAILED = "COMPENSATION_FAILED"
    MANUAL_RECONCILIATION_REQUIRED = "MANUAL_RECONCILIATION_REQUIRED"


BOOKING_RESULT_STEPS = frozenset({SagaStepName.BOOKING_SUCCEEDED.value, SagaStepName.BOOKING_FAILED.value})
COMPENSATION_RESULT_STEPS = frozenset(
    {SagaStepName.COMPENSATION_SUCCEEDED.value, SagaStepName.COMPENSATION_FAILED.value}
)


class SagaStep(Base):
    """Append-only step log; the unique key makes every step write idempotent."""

    __tablename__ = "saga_steps"
    __table_args__ = (UniqueConstraint("payment_id", "step", name="uq_saga_step"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    payment_id: Mapped[str] = mapped_column(String, ForeignKey("payments.id"), index=True)
    step: Mapped[str] = mapped_column(String(64))
    detail: Mapped[dict] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
