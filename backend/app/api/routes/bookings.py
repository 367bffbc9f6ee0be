"""
Booking endpoints: create, inspect, pay, cancel, retry, refund.

Handlers that move inventory commit explicitly before invalidating the
availability cache, so a concurrent reader cannot re-cache the old count.
"""

from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_booking_service, get_cache
from app.core.exceptions import GatewayError
from app.core.logging import get_logger
from app.core.security import get_current_user
from app.db.session import get_db
from app.infrastructure.redis_client import RedisClient
from app.models.user import User
from app.schemas.booking import (
    BookingCreate,
    BookingCreatedResponse,
    BookingListResponse,
    BookingResponse,
    PaymentInfo,
    RefundRequest,
)
from app.schemas.payment import PaymentRecordResponse, RefundResponse
from app.services.booking_service import AttendeeInfo, BookingService
from app.services.cache_service import invalidate_availability

logger = get_logger(__name__)
router = APIRouter(prefix="/bookings", tags=["Bookings"])


async def _commit_and_invalidate(
    db: AsyncSession, service: BookingService, cache: Optional[RedisClient]
) -> None:
    await db.commit()
    await invalidate_availability(cache, *service.touched_ticket_types)


@router.post("/", response_model=BookingCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    booking_data: BookingCreate,
    user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
    cache: Optional[RedisClient] = Depends(get_cache),
    db: AsyncSession = Depends(get_db),
):
    """
    Reserve tickets and start payment.

    The reservation is committed before the gateway is called. If the gateway
    fails, the booking stays pending (its hold expires on schedule) and the
    502 response carries the booking code so payment can be re-initiated.
    """
    attendee = booking_data.attendee
    booking = await service.create_booking(
        user,
        booking_data.event_id,
        booking_data.ticket_type_id,
        booking_data.quantity,
        attendee=AttendeeInfo(
            name=attendee.name if attendee else None,
            email=attendee.email if attendee else None,
            phone=attendee.phone if attendee else None,
        ),
        payment_method=booking_data.payment_method,
    )
    await _commit_and_invalidate(db, service, cache)

    try:
        token = await service.initiate_payment(booking, user)
    except GatewayError as e:
        logger.error("payment_initiation_failed", booking_code=booking.booking_code, error=e.message)
        raise GatewayError(
            f"Booking {booking.booking_code} is reserved but payment could not be started: {e.message}",
            booking_code=booking.booking_code,
        ) from e

    return BookingCreatedResponse(
        booking=BookingResponse.model_validate(booking),
        payment=PaymentInfo(order_id=token.order_id, payment_token=token.token, iframe_url=token.iframe_url),
    )


@router.get("/", response_model=BookingListResponse)
async def list_user_bookings(
    user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """Get all bookings for the authenticated user, newest first."""
    bookings = await service.list_for_user(user.id)
    return BookingListResponse(
        bookings=[BookingResponse.model_validate(b) for b in bookings],
        total=len(bookings),
    )


@router.get("/{booking_code}", response_model=BookingResponse)
async def get_booking(
    booking_code: str,
    user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    return await service.get_for_user(booking_code, user)


@router.post("/{booking_code}/payment", response_model=PaymentInfo)
async def initiate_payment(
    booking_code: str,
    user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """(Re)issue a payment key for a booking that is still awaiting payment."""
    booking = await service.get_for_user(booking_code, user, allow_organizer=False)
    token = await service.initiate_payment(booking, user)
    return PaymentInfo(order_id=token.order_id, payment_token=token.token, iframe_url=token.iframe_url)


@router.post("/{booking_code}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_code: str,
    user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
    cache: Optional[RedisClient] = Depends(get_cache),
    db: AsyncSession = Depends(get_db),
):
    """Cancel a pending booking and release its tickets."""
    booking = await service.get_for_user(booking_code, user, allow_organizer=False)
    booking = await service.cancel_booking(booking)
    await _commit_and_invalidate(db, service, cache)
    return booking


@router.post("/{booking_code}/retry", response_model=BookingResponse)
async def retry_booking(
    booking_code: str,
    user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
    cache: Optional[RedisClient] = Depends(get_cache),
    db: AsyncSession = Depends(get_db),
):
    """
    Bring a cancelled or expired booking back to pending. The tickets are
    reserved again, so this fails with 409 if they have been sold meanwhile.
    """
    booking = await service.get_for_user(booking_code, user, allow_organizer=False)
    booking = await service.retry_booking(booking)
    await _commit_and_invalidate(db, service, cache)
    return booking


@router.post("/{booking_code}/refund", response_model=RefundResponse)
async def refund_booking(
    booking_code: str,
    refund: RefundRequest,
    user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
    cache: Optional[RedisClient] = Depends(get_cache),
    db: AsyncSession = Depends(get_db),
):
    """Organizer refund, full by default or partial with amount_cents."""
    booking = await service.get_by_code(booking_code)
    refunded_before = 0
    payment = await service.get_payment(booking)
    if payment is not None:
        refunded_before = payment.refund_amount_cents

    payment = await service.refund_booking(booking, user, refund.amount_cents, refund.reason)
    await _commit_and_invalidate(db, service, cache)

    return RefundResponse(
        booking_code=booking.booking_code,
        status=booking.status,
        payment_status=booking.payment_status,
        refunded_cents=payment.refund_amount_cents - refunded_before,
        payment=PaymentRecordResponse.model_validate(payment),
    )
