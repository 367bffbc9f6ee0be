"""
Pydantic schemas for payment status, refunds and webhooks.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class PaymentRecordResponse(BaseModel):
    reference: str
    gateway_order_id: Optional[str]
    transaction_id: Optional[str]
    payment_method: Optional[str]
    status: str
    amount_cents: int
    currency: str
    refund_amount_cents: int
    refund_reason: Optional[str]
    refunded_at: Optional[datetime]
    authorized_at: Optional[datetime]
    captured_at: Optional[datetime]
    failed_at: Optional[datetime]
    expired_at: Optional[datetime]
    webhook_verified: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class PaymentStatusResponse(BaseModel):
    booking_code: str
    status: str
    payment_status: str
    payment_method: str
    total_price_cents: int
    currency: str
    payment_date: Optional[datetime]
    reserved_at: datetime
    expires_at: Optional[datetime]
    retry_count: int
    can_retry: bool
    can_cancel: bool
    payment: Optional[PaymentRecordResponse]


class PaymentVerifyResponse(BaseModel):
    booking_code: str
    status: str
    payment_status: str
    gateway_checked: bool
    transaction_id: Optional[str] = None


class RefundResponse(BaseModel):
    booking_code: str
    status: str
    payment_status: str
    refunded_cents: int
    payment: PaymentRecordResponse


class WebhookResponse(BaseModel):
    outcome: str
    booking_code: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
