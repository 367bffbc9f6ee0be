"""
Expiry sweeper: reclaims inventory held by abandoned pending bookings.

A booking is abandoned when it is still pending, its payment never
completed (pending or processing), and its hold started more than
BOOKING_EXPIRY_MINUTES ago.

Every booking is expired in its own session and transaction. One bad row
(a concurrent webhook winning the version race, a lost database connection)
is logged and counted; the rest of the batch carries on, and the booking is
simply picked up again on the next sweep if it still qualifies. Expiring the
same booking twice is a no-op through the state guard.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.logging import get_logger
from app.core.metrics import sweeper_errors, sweeper_expired
from app.infrastructure.redis_client import RedisClient
from app.models.booking import Booking
from app.services.booking_service import BookingService
from app.services.booking_state import RELEASABLE_PAYMENT_STATES, BookingStatus
from app.services.cache_service import invalidate_availability

logger = get_logger(__name__)

ServiceFactory = Callable[[AsyncSession], BookingService]


@dataclass
class SweepResult:
    processed: int = 0
    failed: int = 0
    skipped: int = 0


class ExpirySweeper:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        service_factory: ServiceFactory,
        *,
        expiry_minutes: int = 15,
        cache: Optional[RedisClient] = None,
        batch_size: int = 500,
    ):
        self.session_factory = session_factory
        self.service_factory = service_factory
        self.expiry_window = timedelta(minutes=expiry_minutes)
        self.cache = cache
        self.batch_size = batch_size

    async def find_candidates(self, cutoff: datetime) -> list[int]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Booking.id)
                .where(
                    Booking.status == BookingStatus.PENDING.value,
                    Booking.payment_status.in_(RELEASABLE_PAYMENT_STATES),
                    Booking.reserved_at < cutoff,
                )
                .order_by(Booking.reserved_at)
                .limit(self.batch_size)
            )
            return list(result.scalars().all())

    async def expire_one(self, booking_id: int, cutoff: datetime) -> bool:
        async with self.session_factory() as session:
            service = self.service_factory(session)
            booking = await session.get(Booking, booking_id)
            if booking is None:
                return False

            # Re-checked against the fresh row: a retry may have restarted the hold
            expired = await service.expire_booking(booking, reserved_before=cutoff)
            await session.commit()

        if expired:
            await invalidate_availability(self.cache, *service.touched_ticket_types)
        return expired

    async def sweep(self, now: datetime) -> SweepResult:
        cutoff = now - self.expiry_window
        candidates = await self.find_candidates(cutoff)
        result = SweepResult()

        if not candidates:
            logger.debug("sweep_nothing_to_expire", cutoff=cutoff.isoformat())
            return result

        for booking_id in candidates:
            try:
                expired = await self.expire_one(booking_id, cutoff)
            except Exception as e:
                result.failed += 1
                sweeper_errors.inc()
                logger.error("sweep_booking_failed", booking_id=booking_id, error=str(e))
                continue

            if expired:
                result.processed += 1
                sweeper_expired.inc()
            else:
                result.skipped += 1

        logger.info(
            "sweep_completed",
            candidates=len(candidates),
            expired=result.processed,
            failed=result.failed,
            skipped=result.skipped,
        )
        return result

    async def __call__(self, now: datetime) -> SweepResult:
        return await self.sweep(now)
