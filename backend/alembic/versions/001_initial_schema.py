"""Initial schema: users, events, ticket types, bookings, payments and the payment audit log.

Revision ID: 001
Revises: None
Create Date: 2026-02-28
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Users table
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(150), nullable=False),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # Events table
    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("location", sa.String(255), nullable=True),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("organizer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("end_date >= start_date", name="check_event_dates_ordered"),
    )
    op.create_index("ix_events_id", "events", ["id"])
    op.create_index("ix_events_start_date", "events", ["start_date"])

    # Ticket types: the contended inventory counters
    op.create_table(
        "ticket_types",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.Integer(), sa.ForeignKey("events.id"), nullable=False),
        sa.Column("type", sa.String(20), nullable=False, server_default=sa.text("'standard'")),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'EGP'")),
        sa.Column("total_quantity", sa.Integer(), nullable=False),
        sa.Column("available_quantity", sa.Integer(), nullable=False),
        sa.Column("sale_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sale_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'active'")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.CheckConstraint("available_quantity >= 0", name="check_ticket_available_non_negative"),
        sa.CheckConstraint("total_quantity > 0", name="check_ticket_total_positive"),
        sa.CheckConstraint("available_quantity <= total_quantity", name="check_ticket_available_lte_total"),
        sa.CheckConstraint("price_cents >= 0", name="check_ticket_price_non_negative"),
        sa.CheckConstraint("sale_end > sale_start", name="check_ticket_sale_window"),
        sa.CheckConstraint(
            "status IN ('active', 'sold_out', 'sale_ended', 'cancelled')",
            name="check_ticket_status",
        ),
        sa.CheckConstraint(
            "type IN ('standard', 'vip', 'premium', 'student')",
            name="check_ticket_type",
        ),
    )
    op.create_index("ix_ticket_types_id", "ticket_types", ["id"])
    op.create_index("ix_ticket_types_event_id", "ticket_types", ["event_id"])
    op.create_index("ix_ticket_types_event_type", "ticket_types", ["event_id", "type"])

    # Bookings table
    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_code", sa.String(32), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("event_id", sa.Integer(), sa.ForeignKey("events.id"), nullable=False),
        sa.Column("ticket_type_id", sa.Integer(), sa.ForeignKey("ticket_types.id"), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("total_price_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'EGP'")),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("payment_method", sa.String(20), nullable=False, server_default=sa.text("'card'")),
        sa.Column("payment_order_id", sa.String(64), nullable=True),
        sa.Column("payment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attendee_name", sa.String(150), nullable=False),
        sa.Column("attendee_email", sa.String(255), nullable=False),
        sa.Column("attendee_phone", sa.String(32), nullable=True),
        sa.Column("qr_code", sa.Text(), nullable=True),
        sa.Column("reserved_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("inventory_released", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("payment_order_id", name="uq_bookings_payment_order_id"),
        sa.CheckConstraint("quantity > 0", name="check_booking_quantity_positive"),
        sa.CheckConstraint("total_price_cents >= 0", name="check_booking_total_non_negative"),
        sa.CheckConstraint(
            "status IN ('pending', 'confirmed', 'cancelled', 'expired', 'refunded')",
            name="check_booking_status",
        ),
        sa.CheckConstraint(
            "payment_status IN ('pending', 'processing', 'completed', 'failed', 'refunded', 'expired')",
            name="check_booking_payment_status",
        ),
        sa.CheckConstraint(
            "payment_status != 'completed' OR status = 'confirmed'",
            name="check_completed_payment_is_confirmed",
        ),
    )
    op.create_index("ix_bookings_id", "bookings", ["id"])
    op.create_index("ix_bookings_booking_code", "bookings", ["booking_code"], unique=True)
    op.create_index("ix_bookings_user_id", "bookings", ["user_id"])
    op.create_index("ix_bookings_event_id", "bookings", ["event_id"])
    op.create_index("ix_bookings_ticket_type_id", "bookings", ["ticket_type_id"])
    # The expiry sweeper scans pending bookings by hold start
    op.create_index(
        "ix_bookings_status_payment_reserved",
        "bookings",
        ["status", "payment_status", "reserved_at"],
    )
    op.create_index("ix_bookings_user_created", "bookings", ["user_id", "created_at"])

    # Payments table, one row per booking
    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("reference", sa.String(32), nullable=False),
        sa.Column("gateway_order_id", sa.String(64), nullable=True),
        sa.Column("transaction_id", sa.String(64), nullable=True),
        sa.Column("payment_method", sa.String(20), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'EGP'")),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("gateway_response", sa.JSON(), nullable=False),
        sa.Column("refund_amount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("refund_reason", sa.Text(), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("authorized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("webhook_verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("webhook_received_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("booking_id", name="uq_payments_booking_id"),
        sa.UniqueConstraint("reference", name="uq_payments_reference"),
        sa.UniqueConstraint("gateway_order_id", name="uq_payments_gateway_order_id"),
        sa.CheckConstraint("amount_cents >= 0", name="check_payment_amount_non_negative"),
        sa.CheckConstraint("refund_amount_cents >= 0", name="check_refund_non_negative"),
        sa.CheckConstraint("refund_amount_cents <= amount_cents", name="check_refund_lte_amount"),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'authorized', 'captured', 'failed', "
            "'cancelled', 'expired', 'refunded', 'partially_refunded')",
            name="check_payment_status",
        ),
    )
    op.create_index("ix_payments_id", "payments", ["id"])
    op.create_index("ix_payments_user_id", "payments", ["user_id"])
    # Retention cleanup deletes old failures by status and age
    op.create_index("ix_payments_status_created", "payments", ["status", "created_at"])

    # Append-only payment audit log
    op.create_table(
        "payment_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "payment_id",
            sa.Integer(),
            sa.ForeignKey("payments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event", sa.String(64), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_payment_events_id", "payment_events", ["id"])
    op.create_index("ix_payment_events_payment_id", "payment_events", ["payment_id"])


def downgrade() -> None:
    op.drop_table("payment_events")
    op.drop_table("payments")
    op.drop_table("bookings")
    op.drop_table("ticket_types")
    op.drop_table("events")
    op.drop_table("users")
