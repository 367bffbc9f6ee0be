"""
Request dependencies for the lifespan-owned resources.

Everything here is read off app.state, where the lifespan put it. Tests
swap any of them with app.dependency_overrides.
"""

from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, utcnow
from app.core.config import Settings, get_settings
from app.db.session import get_db
from app.infrastructure.redis_client import RedisClient
from app.services.booking_service import BookingService
from app.services.interfaces.payment_gateway import PaymentGateway
from app.services.notifications import LogNotifier, Notifier
from app.services.ticket_tokens import TicketTokenIssuer


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


def get_clock(request: Request) -> Clock:
    return getattr(request.app.state, "clock", utcnow)


def get_cache(request: Request) -> Optional[RedisClient]:
    return getattr(request.app.state, "cache", None)


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.payment_gateway


def get_notifier(request: Request) -> Notifier:
    return getattr(request.app.state, "notifier", None) or LogNotifier()


def get_ticket_tokens(settings: Settings = Depends(get_app_settings)) -> TicketTokenIssuer:
    return TicketTokenIssuer.from_settings(settings)


def get_booking_service(
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: Notifier = Depends(get_notifier),
    ticket_tokens: TicketTokenIssuer = Depends(get_ticket_tokens),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_app_settings),
) -> BookingService:
    return BookingService(
        db,
        gateway,
        notifier=notifier,
        ticket_tokens=ticket_tokens,
        clock=clock,
        settings=settings,
    )
