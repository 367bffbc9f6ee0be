"""
Pydantic schemas for ticket availability and ticket verification.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class TicketAvailabilityResponse(BaseModel):
    ticket_type_id: int
    event_id: int
    type: str
    price_cents: int
    currency: str
    total_quantity: int
    available_quantity: int
    status: str
    sale_start: datetime
    sale_end: datetime
    on_sale: bool
    cached: bool = False


class TicketVerifyResponse(BaseModel):
    valid: bool
    booking_code: Optional[str] = None
    status: Optional[str] = None
    attendee_name: Optional[str] = None
    quantity: Optional[int] = None
    event_id: Optional[int] = None
