"""
Payment endpoints: status summary, forced gateway verification, webhook.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_booking_service, get_cache
from app.core.security import get_current_user
from app.db.session import get_db
from app.infrastructure.redis_client import RedisClient
from app.models.user import User
from app.schemas.payment import (
    PaymentRecordResponse,
    PaymentStatusResponse,
    PaymentVerifyResponse,
    WebhookResponse,
)
from app.services.booking_service import BookingService
from app.services.cache_service import invalidate_availability
from app.services.webhook_service import WebhookReconciler

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/webhook", response_model=WebhookResponse)
async def payment_webhook(
    request: Request,
    hmac: Optional[str] = Query(None),
    x_webhook_signature: Optional[str] = Header(None),
    service: BookingService = Depends(get_booking_service),
    cache: Optional[RedisClient] = Depends(get_cache),
    db: AsyncSession = Depends(get_db),
):
    """
    Gateway callback. The signature comes as the `hmac` query parameter
    (Paymob's convention) or the X-Webhook-Signature header.
    """
    raw_body = await request.body()
    result = await WebhookReconciler(service).handle_webhook(raw_body, hmac or x_webhook_signature)

    await db.commit()
    await invalidate_availability(cache, *service.touched_ticket_types)

    return WebhookResponse(
        outcome=result.outcome,
        booking_code=result.booking_code,
        status=result.status,
        payment_status=result.payment_status,
    )


@router.get("/{booking_code}/status", response_model=PaymentStatusResponse)
async def payment_status(
    booking_code: str,
    user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """Where the booking's payment stands and what the user can do next."""
    booking = await service.get_for_user(booking_code, user)
    summary = await service.payment_summary(booking)
    payment = summary.pop("payment")
    return PaymentStatusResponse(
        **summary,
        payment=PaymentRecordResponse.model_validate(payment) if payment else None,
    )


@router.post("/{booking_code}/verify", response_model=PaymentVerifyResponse)
async def verify_payment(
    booking_code: str,
    user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
    cache: Optional[RedisClient] = Depends(get_cache),
    db: AsyncSession = Depends(get_db),
):
    """Ask the gateway directly instead of waiting for the webhook."""
    booking = await service.get_for_user(booking_code, user)
    tx = await service.verify_with_gateway(booking)

    await db.commit()
    await invalidate_availability(cache, *service.touched_ticket_types)

    return PaymentVerifyResponse(
        booking_code=booking.booking_code,
        status=booking.status,
        payment_status=booking.payment_status,
        gateway_checked=tx is not None,
        transaction_id=tx.transaction_id if tx else None,
    )
