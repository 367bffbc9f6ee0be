"""
Background job wiring: which jobs run and how often.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.clock import Clock, utcnow
from app.core.config import Settings
from app.infrastructure.redis_client import RedisClient
from app.infrastructure.scheduler import JobScheduler
from app.services.booking_service import BookingService
from app.services.expiry_service import ExpirySweeper
from app.services.interfaces.payment_gateway import PaymentGateway
from app.services.maintenance_service import (
    BookingStatsJob,
    PaymentRetentionCleaner,
    PendingPaymentVerifier,
)
from app.services.notifications import LogNotifier, Notifier
from app.services.ticket_tokens import TicketTokenIssuer


def build_scheduler(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    gateway: PaymentGateway,
    *,
    cache: Optional[RedisClient] = None,
    notifier: Optional[Notifier] = None,
    clock: Clock = utcnow,
) -> JobScheduler:
    notifier = notifier or LogNotifier()
    ticket_tokens = TicketTokenIssuer.from_settings(settings)

    def service_factory(session: AsyncSession) -> BookingService:
        return BookingService(
            session,
            gateway,
            notifier=notifier,
            ticket_tokens=ticket_tokens,
            clock=clock,
            settings=settings,
        )

    scheduler = JobScheduler(clock=clock, poll_interval=settings.SCHEDULER_POLL_SECONDS)
    scheduler.add_job(
        "expiry_sweep",
        settings.SWEEP_INTERVAL_SECONDS,
        ExpirySweeper(
            session_factory,
            service_factory,
            expiry_minutes=settings.BOOKING_EXPIRY_MINUTES,
            cache=cache,
        ),
        run_immediately=True,
    )
    scheduler.add_job(
        "payment_verification",
        settings.PAYMENT_VERIFY_INTERVAL_SECONDS,
        PendingPaymentVerifier(
            session_factory,
            service_factory,
            min_age_minutes=settings.PAYMENT_VERIFY_MIN_AGE_MINUTES,
            cache=cache,
        ),
    )
    scheduler.add_job(
        "payment_cleanup",
        settings.PAYMENT_CLEANUP_INTERVAL_SECONDS,
        PaymentRetentionCleaner(session_factory, retention_days=settings.PAYMENT_RETENTION_DAYS),
    )
    scheduler.add_job(
        "booking_stats",
        settings.STATS_INTERVAL_SECONDS,
        BookingStatsJob(session_factory),
    )
    return scheduler
