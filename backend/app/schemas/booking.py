"""
Pydantic schemas for booking-related request/response validation.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field


class AttendeeIn(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=150)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=32)


class BookingCreate(BaseModel):
    event_id: int
    ticket_type_id: int
    quantity: int = Field(default=1, gt=0)
    payment_method: Literal["card", "wallet"] = "card"
    attendee: Optional[AttendeeIn] = None


class BookingResponse(BaseModel):
    id: int
    booking_code: str
    user_id: int
    event_id: int
    ticket_type_id: int
    quantity: int
    total_price_cents: int
    currency: str
    status: str
    payment_status: str
    payment_method: str
    payment_order_id: Optional[str]
    payment_date: Optional[datetime]
    attendee_name: str
    attendee_email: str
    attendee_phone: Optional[str]
    qr_code: Optional[str]
    reserved_at: datetime
    retry_count: int
    cancelled_at: Optional[datetime]
    expired_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class PaymentInfo(BaseModel):
    order_id: str
    payment_token: str
    iframe_url: Optional[str] = None


class BookingCreatedResponse(BaseModel):
    booking: BookingResponse
    payment: PaymentInfo


class BookingListResponse(BaseModel):
    bookings: list[BookingResponse]
    total: int


class RefundRequest(BaseModel):
    amount_cents: Optional[int] = Field(None, gt=0)
    reason: Optional[str] = Field(None, max_length=500)
