"""initial mentorsaga schema

Revision ID: 0001_mentorsaga
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_mentorsaga"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "payments",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("external_payment_intent_id", sa.String(length=255), nullable=False),
        sa.Column("external_checkout_session_id", sa.String(length=255), nullable=False),
        sa.Column("mentor_id", sa.String(), nullable=False),
        sa.Column("customer_email", sa.String(length=255), nullable=False),
        sa.Column("customer_name", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("mentor_fee", sa.Integer(), nullable=False),
        sa.Column("platform_fee", sa.Integer(), nullable=False),
        sa.Column("mentor_payout_amount", sa.Integer(), nullable=False),
        sa.Column("platform_status", sa.String(), nullable=False),
        sa.Column("external_status", sa.String(), nullable=False),
        sa.Column("dispute_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("transfer_id", sa.String(length=255), nullable=True),
        sa.Column("transfer_retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processor_metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_payments_external_payment_intent_id", "payments", ["external_payment_intent_id"], unique=True
    )
    op.create_index(
        "ix_payments_external_checkout_session_id", "payments", ["external_checkout_session_id"], unique=True
    )
    op.create_index("ix_payments_mentor_id", "payments", ["mentor_id"])
    op.create_index("ix_payments_platform_status", "payments", ["platform_status"])
    op.create_index("ix_payments_dispute_period_end", "payments", ["dispute_period_end"])
    # Payout sweep hot path.
    op.create_index(
        "ix_payments_payout_due",
        "payments",
        ["dispute_period_end"],
        postgresql_where=sa.text("platform_status = 'SUCCEEDED' AND transfer_id IS NULL"),
    )

    op.create_table(
        "saga_steps",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("payment_id", sa.String(), nullable=False),
        sa.Column("step", sa.String(length=64), nullable=False),
        sa.Column("detail", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payment_id", "step", name="uq_saga_step"),
    )
    op.create_index("ix_saga_steps_payment_id", "saga_steps", ["payment_id"])

    op.create_table(
        "bookings",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("external_booking_id", sa.Integer(), nullable=False),
        sa.Column("external_uid", sa.String(length=255), nullable=False),
        sa.Column("title", sa.String(length=512), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("state_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("event_type_id", sa.Integer(), nullable=True),
        sa.Column("payment_ref", sa.String(), nullable=True),
        sa.Column("is_free", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("attendees", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("organizer", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("webhook_payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["payment_ref"], ["payments.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_bookings_external_booking_id", "bookings", ["external_booking_id"], unique=True)
    op.create_index("ix_bookings_external_uid", "bookings", ["external_uid"], unique=True)
    op.create_index("ix_bookings_start_time", "bookings", ["start_time"])
    op.create_index("ix_bookings_status", "bookings", ["status"])
    op.create_index("ix_bookings_payment_ref", "bookings", ["payment_ref"])

    op.create_table(
        "booking_timeline",
        sa.Column("timeline_id", sa.String(), nullable=False),
        sa.Column("booking_id", sa.String(), nullable=False),
        sa.Column("from_state", sa.String(), nullable=True),
        sa.Column("to_state", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["booking_id"], ["bookings.id"]),
        sa.PrimaryKeyConstraint("timeline_id"),
    )
    op.create_index("ix_booking_timeline_booking_id", "booking_timeline", ["booking_id"])

    op.create_table(
        "scheduling_tokens",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("mentor_id", sa.String(), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=False),
        sa.Column("access_token_expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("refresh_token_expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("external_user_id", sa.Integer(), nullable=False),
        sa.Column("external_username", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_scheduling_tokens_mentor_id", "scheduling_tokens", ["mentor_id"], unique=True)
    op.create_index("ix_scheduling_tokens_external_user_id", "scheduling_tokens", ["external_user_id"])

    op.create_table(
        "notification_logs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("payment_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(length=64), nullable=False),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("recipient", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notification_logs_payment_id", "notification_logs", ["payment_id"])
    op.create_index("ix_notification_logs_kind", "notification_logs", ["kind"])

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("aggregate_type", sa.String(), nullable=False),
        sa.Column("aggregate_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("topic", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_outbox_events_aggregate_id", "outbox_events", ["aggregate_id"])
    op.create_index("ix_outbox_events_event_type", "outbox_events", ["event_type"])
    op.create_index("ix_outbox_events_status", "outbox_events", ["status"])
    op.create_index("ix_outbox_events_status_created_at", "outbox_events", ["status", "created_at"])

    op.create_table(
        "inbox_events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("consumed_by_service", sa.String(), nullable=False),
        sa.Column("consumed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("event_id", "consumed_by_service"),
        sa.UniqueConstraint("event_id", "consumed_by_service", name="uq_inbox_consumer"),
    )


def downgrade() -> None:
    op.drop_table("inbox_events")
    op.drop_index("ix_outbox_events_status_created_at", table_name="outbox_events")
    op.drop_index("ix_outbox_events_status", table_name="outbox_events")
    op.drop_index("ix_outbox_events_event_type", table_name="outbox_events")
    op.drop_index("ix_outbox_events_aggregate_id", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index("ix_notification_logs_kind", table_name="notification_logs")
    op.drop_index("ix_notification_logs_payment_id", table_name="notification_logs")
    op.drop_table("notification_logs")
    op.drop_index("ix_scheduling_tokens_external_user_id", table_name="scheduling_tokens")
    op.drop_index("ix_scheduling_tokens_mentor_id", table_name="scheduling_tokens")
    op.drop_table("scheduling_tokens")
    op.drop_index("ix_booking_timeline_booking_id", table_name="booking_timeline")
    op.drop_table("booking_timeline")
    op.drop_index("ix_bookings_payment_ref", table_name="bookings")
    op.drop_index("ix_bookings_status", table_name="bookings")
    op.drop_index("ix_bookings_start_time", table_name="bookings")
    op.drop_index("ix_bookings_external_uid", table_name="bookings")
    op.drop_index("ix_bookings_external_booking_id", table_name="bookings")
    op.drop_table("bookings")
    op.drop_index("ix_saga_steps_payment_id", table_name="saga_steps")
    op.drop_table("saga_steps")
    op.drop_index("ix_payments_payout_due", table_name="payments")
    op.drop_index("ix_payments_dispute_period_end", table_name="payments")
    op.drop_index("ix_payments_platform_status", table_name="payments")
    op.drop_index("ix_payments_mentor_id", table_name="payments")
    op.drop_index("ix_payments_external_checkout_session_id", table_name="payments")
    op.drop_index("ix_payments_external_payment_intent_id", table_name="payments")
    op.drop_table("payments")
