"""
Event model. Owned by the event management side; the booking flow reads
end_date to reject bookings for events that are over and organizer_id to
authorize refunds.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, Index, CheckConstraint
from sqlalchemy.orm import relationship

from app.db.base import Base, TimestampMixin, UTCDateTime


class Event(Base, TimestampMixin):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    location = Column(String(255), nullable=True)
    start_date = Column(UTCDateTime(), nullable=False)
    end_date = Column(UTCDateTime(), nullable=False)
    organizer_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    # Relationships
    organizer = relationship("User", back_populates="events")
    ticket_types = relationship("TicketInventory", back_populates="event", lazy="selectin")

    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="check_event_dates_ordered"),
        Index("ix_events_start_date", "start_date"),
    )

    def __repr__(self) -> str:
        return f"<Event(id={self.id}, title={self.title})>"
