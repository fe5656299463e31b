"""Payment records captured from the payment processor.

A row is created once per payment intent (unique key) and never deleted; its
platform status only moves forward.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from mentorsaga.common.db import Base, JSONType


class PaymentRecord(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    external_payment_intent_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    external_checkout_session_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    mentor_id: Mapped[str] = mapped_column(String, index=True)
    customer_email: Mapped[str] = mapped_column(String(255))
    customer_name: Mapped[str] = mapped_column(String(255))
    amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    mentor_fee: Mapped[int] = mapped_column(Integer)
    platform_fee: Mapped[int] = mapped_column(Integer)
    mentor_payout_amount: Mapped[int] = mapped_column(Integer)
    platform_status: Mapped[str] = mapped_column(String, index=True, default="PENDING")
    external_status: Mapped[str] = mapped_column(String, default="open")
    dispute_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    transfer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    transfer_retry_count: Mapped[int] = mapped_column(Integer, default=0)
    processor_metadata: Mapped[dict] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
