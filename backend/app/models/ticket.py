"""
Ticket type inventory.

Key design decisions:
- `available_quantity` is the hot, contended counter; every write goes through
  the inventory ledger's conditional UPDATE, never direct attribute assignment
- `version` enables optimistic locking for concurrent reservations
- CHECK constraints are the final safety net: 0 <= available <= quantity
- `status` is derived from the counter and sale window on each ledger write
"""

from sqlalchemy import Column, Integer, String, ForeignKey, Index, CheckConstraint
from sqlalchemy.orm import relationship

from app.db.base import Base, TimestampMixin, UTCDateTime

TICKET_TYPES = ("standard", "vip", "premium", "student")
TICKET_STATUSES = ("active", "sold_out", "sale_ended", "cancelled")


class TicketInventory(Base, TimestampMixin):
    __tablename__ = "ticket_types"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    type = Column(String(20), nullable=False, default="standard")
    price_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="EGP")
    total_quantity = Column(Integer, nullable=False)
    available_quantity = Column(Integer, nullable=False)
    sale_start = Column(UTCDateTime(), nullable=False)
    sale_end = Column(UTCDateTime(), nullable=False)
    status = Column(String(20), nullable=False, default="active")

    # Optimistic locking version counter
    version = Column(Integer, nullable=False, default=1)

    # Relationships
    event = relationship("Event", back_populates="ticket_types")

    __table_args__ = (
        CheckConstraint("available_quantity >= 0", name="check_ticket_available_non_negative"),
        CheckConstraint("total_quantity > 0", name="check_ticket_total_positive"),
        CheckConstraint("available_quantity <= total_quantity", name="check_ticket_available_lte_total"),
        CheckConstraint("price_cents >= 0", name="check_ticket_price_non_negative"),
        CheckConstraint("sale_end > sale_start", name="check_ticket_sale_window"),
        CheckConstraint(
            "status IN ('active', 'sold_out', 'sale_ended', 'cancelled')",
            name="check_ticket_status",
        ),
        CheckConstraint(
            "type IN ('standard', 'vip', 'premium', 'student')",
            name="check_ticket_type",
        ),
        Index("ix_ticket_types_event_type", "event_id", "type"),
    )

    @property
    def sold_quantity(self) -> int:
        return self.total_quantity - self.available_quantity

    def __repr__(self) -> str:
        return (
            f"<TicketInventory(id={self.id}, event={self.event_id}, "
            f"available={self.available_quantity}/{self.total_quantity}, status={self.status})>"
        )
