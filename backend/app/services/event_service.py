"""
Event lookups used by the booking flow.
Event management itself lives elsewhere; this side only reads.
"""

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import EventEnded, EventNotFound
from app.models.event import Event


async def get_event(db: AsyncSession, event_id: int) -> Event:
    """Get a single event by ID."""
    result = await db.execute(select(Event).where(Event.id == event_id))
    event = result.scalar_one_or_none()

    if not event:
        raise EventNotFound(f"Event {event_id} not found", event_id=event_id)
    return event


def ensure_not_ended(event: Event, now: datetime) -> None:
    if event.end_date < now:
        raise EventEnded(f"Event {event.id} has already ended", event_id=event.id)
