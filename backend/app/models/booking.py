"""
Booking model representing a user's reservation of N units of one ticket type.

Key design decisions:
- `booking_code` is the human-readable, globally unique external reference
- `quantity` is frozen at creation; releases always return exactly this amount
- `inventory_released` records whether the current hold has been given back,
  which is what makes cancel/expire/fail release exactly once
- `reserved_at` marks the start of the current hold; the sweeper measures
  expiry from it, and a retry restarts it
- `version` is the ORM version counter: concurrent transitions on the same
  booking are linearized, the loser gets a StaleDataError
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import validates

from app.db.base import Base, TimestampMixin, UTCDateTime

BOOKING_STATUSES = ("pending", "confirmed", "cancelled", "expired", "refunded")
BOOKING_PAYMENT_STATUSES = ("pending", "processing", "completed", "failed", "refunded", "expired")
PAYMENT_METHODS = ("card", "wallet")


class Booking(Base, TimestampMixin):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    booking_code = Column(String(32), nullable=False, unique=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    ticket_type_id = Column(Integer, ForeignKey("ticket_types.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    total_price_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="EGP")

    status = Column(String(20), nullable=False, default="pending")
    payment_status = Column(String(20), nullable=False, default="pending")
    payment_method = Column(String(20), nullable=False, default="card")
    payment_order_id = Column(String(64), nullable=True, unique=True)
    payment_date = Column(UTCDateTime(), nullable=True)

    # Snapshot of the attendee's contact details at booking time
    attendee_name = Column(String(150), nullable=False)
    attendee_email = Column(String(255), nullable=False)
    attendee_phone = Column(String(32), nullable=True)

    # Opaque verification URL issued on confirmation
    qr_code = Column(Text, nullable=True)

    reserved_at = Column(UTCDateTime(), nullable=False)
    inventory_released = Column(Boolean, nullable=False, default=False)
    retry_count = Column(Integer, nullable=False, default=0)
    cancelled_at = Column(UTCDateTime(), nullable=True)
    expired_at = Column(UTCDateTime(), nullable=True)

    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("quantity > 0", name="check_booking_quantity_positive"),
        CheckConstraint("total_price_cents >= 0", name="check_booking_total_non_negative"),
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'cancelled', 'expired', 'refunded')",
            name="check_booking_status",
        ),
        CheckConstraint(
            "payment_status IN ('pending', 'processing', 'completed', 'failed', 'refunded', 'expired')",
            name="check_booking_payment_status",
        ),
        CheckConstraint(
            "payment_status != 'completed' OR status = 'confirmed'",
            name="check_completed_payment_is_confirmed",
        ),
        # Sweeper scan: pending bookings ordered by hold start
        Index("ix_bookings_status_payment_reserved", "status", "payment_status", "reserved_at"),
        Index("ix_bookings_user_created", "user_id", "created_at"),
    )

    @validates("quantity")
    def _freeze_quantity(self, key, value):
        if self.quantity is not None and value != self.quantity:
            raise ValueError("Booking quantity cannot change after creation")
        return value

    @property
    def is_valid(self) -> bool:
        return self.status == "confirmed" and self.payment_status == "completed"

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, code={self.booking_code}, status={self.status}, "
            f"payment={self.payment_status})>"
        )
