"""Initial schema: pricing configs, quotes, bookings, modifications, cancellations, payments, outbox"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(*names: str) -> list[sa.Column]:
    return [sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now()) for name in names]


def upgrade() -> None:
    op.create_table(
        "drivers",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(20), unique=True, nullable=False),
        sa.Column("seats", sa.Integer, nullable=False, server_default="4"),
        sa.Column("status", sa.String(20), nullable=False, server_default="offline"),
        sa.Column("current_booking_id", sa.String, nullable=True),
        *_timestamps("created_at", "updated_at"),
    )
    op.create_index("ix_drivers_status", "drivers", ["status"])

    op.create_table(
        "pricing_configs",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("version", sa.String(64), unique=True, nullable=False),
        sa.Column("config", sa.JSON, nullable=False),
        sa.Column("effective_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("effective_to", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String, nullable=True),
        *_timestamps("created_at"),
    )
    op.create_index("ix_pricing_configs_effective_from", "pricing_configs", ["effective_from"])

    op.create_table(
        "quotes",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("user_id", sa.String, nullable=True),
        sa.Column("service_type", sa.String(20), nullable=False),
        sa.Column("request", sa.JSON, nullable=False),
        sa.Column("distance", sa.JSON, nullable=True),
        sa.Column("breakdown", sa.JSON, nullable=False),
        sa.Column("warnings", sa.JSON, nullable=False),
        sa.Column("booking_reference", sa.String(32), unique=True, nullable=False),
        sa.Column("total_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps("created_at"),
    )
    op.create_index("ix_quotes_user_id", "quotes", ["user_id"])
    op.create_index("ix_quotes_valid_until", "quotes", ["valid_until"])
    op.create_index("ix_quotes_created_at", "quotes", ["created_at"])

    op.create_table(
        "bookings",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("user_id", sa.String, nullable=False),
        sa.Column("quote_id", sa.String, sa.ForeignKey("quotes.id"), unique=True, nullable=True),
        sa.Column("driver_id", sa.String, sa.ForeignKey("drivers.id"), nullable=True),
        sa.Column("service_type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("trip", sa.JSON, nullable=False),
        sa.Column("pickup_address", sa.String(500), nullable=False),
        sa.Column("dropoff_address", sa.String(500), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("return_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_hours", sa.Numeric(5, 2), nullable=True),
        sa.Column("passenger_count", sa.Integer, nullable=False, server_default="1"),
        sa.Column("contact_phone", sa.String(20), nullable=False),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("fare_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("gratuity_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("enhancement_cost", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("total_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("enhancements", sa.JSON, nullable=False),
        sa.Column("trip_protection", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("modification_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_modified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("archived", sa.Boolean, nullable=False, server_default=sa.false()),
        *_timestamps("created_at", "updated_at"),
    )
    op.create_index("ix_bookings_user_id", "bookings", ["user_id"])
    op.create_index("ix_bookings_driver_id", "bookings", ["driver_id"])
    op.create_index("ix_bookings_status", "bookings", ["status"])
    op.create_index("ix_bookings_scheduled_at", "bookings", ["scheduled_at"])
    op.create_index("ix_bookings_archived", "bookings", ["archived"])
    op.create_index("ix_bookings_created_at", "bookings", ["created_at"])

    op.create_table(
        "booking_confirmations",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("booking_id", sa.String, sa.ForeignKey("bookings.id"), unique=True, nullable=False),
        sa.Column("booking_reference", sa.String(32), unique=True, nullable=False),
        sa.Column("confirmation_number", sa.String(32), unique=True, nullable=False),
        sa.Column("modification_deadline", sa.DateTime(timezone=True), nullable=False),
        *_timestamps("created_at"),
    )

    op.create_table(
        "booking_modifications",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("booking_id", sa.String, sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("modified_by", sa.String, nullable=False),
        sa.Column("modification_type", sa.String(100), nullable=False),
        sa.Column("original_data", sa.JSON, nullable=False),
        sa.Column("new_data", sa.JSON, nullable=False),
        sa.Column("original_total", sa.Numeric(10, 2), nullable=False),
        sa.Column("new_fare_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("new_enhancement_cost", sa.Numeric(10, 2), nullable=False),
        sa.Column("price_difference", sa.Numeric(10, 2), nullable=False),
        sa.Column("modification_fee", sa.Numeric(10, 2), nullable=False),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        *_timestamps("created_at"),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_booking_modifications_booking_id", "booking_modifications", ["booking_id"])
    op.create_index("ix_booking_modifications_status", "booking_modifications", ["status"])

    op.create_table(
        "cancellations",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("booking_id", sa.String, sa.ForeignKey("bookings.id"), unique=True, nullable=False),
        sa.Column("cancelled_by", sa.String, nullable=False),
        sa.Column("cancellation_reason", sa.String(100), nullable=True),
        sa.Column("cancellation_type", sa.String(20), nullable=False, server_default="customer"),
        sa.Column("refund_percentage", sa.Integer, nullable=False),
        sa.Column("cancellation_fee", sa.Numeric(10, 2), nullable=False),
        sa.Column("refund_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("refund_status", sa.String(20), nullable=False),
        sa.Column("refund_ref", sa.String(255), nullable=True),
        sa.Column("refund_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("trip_protection_applied", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("refund_processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps("created_at", "updated_at"),
    )
    op.create_index("ix_cancellations_refund_status", "cancellations", ["refund_status"])

    op.create_table(
        "payments",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("booking_id", sa.String, sa.ForeignKey("bookings.id"), unique=True, nullable=False),
        sa.Column("user_id", sa.String, nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("refunded_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(5), server_default="usd"),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("charge_ref", sa.String(255), nullable=True),
        sa.Column("client_secret", sa.String(255), nullable=True),
        sa.Column("idempotency_key", sa.String(255), unique=True, nullable=False),
        sa.Column("failure_reason", sa.Text, nullable=True),
        *_timestamps("created_at", "updated_at"),
    )
    op.create_index("ix_payments_status", "payments", ["status"])
    op.create_index("ix_payments_charge_ref", "payments", ["charge_ref"])

    op.create_table(
        "payment_events",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("event_id", sa.String(255), unique=True, nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        *_timestamps("processed_at"),
    )

    op.create_table(
        "notification_jobs",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("booking_id", sa.String, nullable=False),
        sa.Column("kind", sa.String(40), nullable=False),
        sa.Column("channel", sa.String(10), nullable=False, server_default="email"),
        sa.Column("dedupe_key", sa.String(255), unique=True, nullable=False),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("last_error", sa.Text, nullable=True),
        *_timestamps("created_at"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_notification_jobs_booking_id", "notification_jobs", ["booking_id"])
    op.create_index("ix_notification_jobs_status", "notification_jobs", ["status"])
    op.create_index("ix_notification_jobs_next_attempt_at", "notification_jobs", ["next_attempt_at"])


def downgrade() -> None:
    op.drop_table("notification_jobs")
    op.drop_table("payment_events")
    op.drop_table("payments")
    op.drop_table("cancellations")
    op.drop_table("booking_modifications")
    op.drop_table("booking_confirmations")
    op.drop_table("bookings")
    op.drop_table("quotes")
    op.drop_table("pricing_configs")
    op.drop_table("drivers")
