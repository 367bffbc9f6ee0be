"""
Ticket endpoints: cached availability and door-side ticket verification.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_cache, get_clock, get_ticket_tokens
from app.core.clock import Clock
from app.db.session import get_db
from app.infrastructure.redis_client import RedisClient
from app.models.booking import Booking
from app.schemas.ticket import TicketAvailabilityResponse, TicketVerifyResponse
from app.services.cache_service import get_cached_availability, set_cached_availability
from app.services.inventory_service import get_availability
from app.services.ticket_tokens import TicketTokenIssuer

router = APIRouter(prefix="/tickets", tags=["Tickets"])


@router.get("/verify", response_model=TicketVerifyResponse)
async def verify_ticket(
    token: str = Query(...),
    tokens: TicketTokenIssuer = Depends(get_ticket_tokens),
    db: AsyncSession = Depends(get_db),
):
    """Check a scanned ticket: signature intact and booking still confirmed."""
    claims = tokens.decode(token)
    if claims is None:
        return TicketVerifyResponse(valid=False)

    result = await db.execute(select(Booking).where(Booking.booking_code == claims.get("booking_code")))
    booking = result.scalar_one_or_none()
    if booking is None:
        return TicketVerifyResponse(valid=False)

    return TicketVerifyResponse(
        valid=booking.is_valid,
        booking_code=booking.booking_code,
        status=booking.status,
        attendee_name=booking.attendee_name,
        quantity=booking.quantity,
        event_id=booking.event_id,
    )


@router.get("/{ticket_type_id}", response_model=TicketAvailabilityResponse)
async def ticket_availability(
    ticket_type_id: int,
    cache: Optional[RedisClient] = Depends(get_cache),
    clock: Clock = Depends(get_clock),
    db: AsyncSession = Depends(get_db),
):
    """
    Availability of one ticket type. Served from Redis when warm; the
    snapshot is dropped whenever a booking takes or returns tickets.
    """
    cached = await get_cached_availability(cache, ticket_type_id)
    if cached is not None:
        return TicketAvailabilityResponse(**cached, cached=True)

    snapshot = await get_availability(db, ticket_type_id, clock())
    await set_cached_availability(cache, ticket_type_id, snapshot)
    return TicketAvailabilityResponse(**snapshot)
