"""
Payment record and its append-only audit log.

One PaymentRecord per booking (unique booking_id). Terminal timestamps are
written once, on first entry into that state; every status change appends a
PaymentEvent row instead of overwriting history.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from app.core.clock import utcnow
from app.db.base import Base, TimestampMixin, UTCDateTime

PAYMENT_STATUSES = (
    "pending",
    "processing",
    "authorized",
    "captured",
    "failed",
    "cancelled",
    "expired",
    "refunded",
    "partially_refunded",
)
TERMINAL_FAILURE_STATUSES = ("failed", "cancelled", "expired")
# The gateway holds the customer's money
FUNDS_HELD_STATUSES = ("authorized", "captured", "partially_refunded")


class PaymentRecord(Base, TimestampMixin):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, unique=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    reference = Column(String(32), nullable=False, unique=True)

    gateway_order_id = Column(String(64), nullable=True, unique=True)
    transaction_id = Column(String(64), nullable=True)
    payment_method = Column(String(20), nullable=True)

    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="EGP")
    status = Column(String(20), nullable=False, default="pending")
    gateway_response = Column(JSON, nullable=False, default=dict)

    refund_amount_cents = Column(Integer, nullable=False, default=0)
    refund_reason = Column(Text, nullable=True)
    refunded_at = Column(UTCDateTime(), nullable=True)

    authorized_at = Column(UTCDateTime(), nullable=True)
    captured_at = Column(UTCDateTime(), nullable=True)
    failed_at = Column(UTCDateTime(), nullable=True)
    expired_at = Column(UTCDateTime(), nullable=True)

    webhook_verified = Column(Boolean, nullable=False, default=False)
    webhook_received_at = Column(UTCDateTime(), nullable=True)

    events = relationship(
        "PaymentEvent",
        back_populates="payment",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="PaymentEvent.id",
    )

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="check_payment_amount_non_negative"),
        CheckConstraint("refund_amount_cents >= 0", name="check_refund_non_negative"),
        CheckConstraint("refund_amount_cents <= amount_cents", name="check_refund_lte_amount"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'authorized', 'captured', 'failed', "
            "'cancelled', 'expired', 'refunded', 'partially_refunded')",
            name="check_payment_status",
        ),
        Index("ix_payments_status_created", "status", "created_at"),
    )

    @property
    def is_successful(self) -> bool:
        return self.status == "captured"

    @property
    def can_refund(self) -> bool:
        return self.status in ("captured", "partially_refunded") and self.refund_amount_cents < self.amount_cents

    def __repr__(self) -> str:
        return f"<PaymentRecord(id={self.id}, booking={self.booking_id}, status={self.status})>"


class PaymentEvent(Base):
    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    event = Column(String(64), nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    payment = relationship("PaymentRecord", back_populates="events")

    def __repr__(self) -> str:
        return f"<PaymentEvent(payment={self.payment_id}, event={self.event})>"
