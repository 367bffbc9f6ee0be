"""
Periodic maintenance jobs that run next to the expiry sweeper.

  - PendingPaymentVerifier: asks the gateway about bookings whose webhook is
    late, so a lost callback does not strand a paid booking
  - PaymentRetentionCleaner: deletes failed/cancelled/expired payment records
    (and their audit trail) past the retention window
  - BookingStatsJob: counts bookings and payments per status into gauges
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import GatewayError
from app.core.logging import get_logger
from app.core.metrics import bookings_by_status, payments_by_status
from app.infrastructure.redis_client import RedisClient
from app.models.booking import BOOKING_STATUSES, Booking
from app.models.payment import PAYMENT_STATUSES, TERMINAL_FAILURE_STATUSES, PaymentEvent, PaymentRecord
from app.services.booking_state import RELEASABLE_PAYMENT_STATES, BookingStatus
from app.services.cache_service import invalidate_availability
from app.services.expiry_service import ServiceFactory

logger = get_logger(__name__)


@dataclass
class VerifyResult:
    checked: int = 0
    updated: int = 0
    failed: int = 0


class PendingPaymentVerifier:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        service_factory: ServiceFactory,
        *,
        min_age_minutes: int = 10,
        cache: Optional[RedisClient] = None,
        batch_size: int = 100,
    ):
        self.session_factory = session_factory
        self.service_factory = service_factory
        self.min_age = timedelta(minutes=min_age_minutes)
        self.cache = cache
        self.batch_size = batch_size

    async def find_candidates(self, now: datetime) -> list[int]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Booking.id)
                .where(
                    Booking.status == BookingStatus.PENDING.value,
                    Booking.payment_status.in_(RELEASABLE_PAYMENT_STATES),
                    Booking.payment_order_id.is_not(None),
                    Booking.reserved_at < now - self.min_age,
                )
                .order_by(Booking.reserved_at)
                .limit(self.batch_size)
            )
            return list(result.scalars().all())

    async def verify_one(self, booking_id: int) -> bool:
        async with self.session_factory() as session:
            service = self.service_factory(session)
            booking = await session.get(Booking, booking_id)
            if booking is None:
                return False

            before = (booking.status, booking.payment_status)
            await service.verify_with_gateway(booking)
            await session.commit()
            changed = before != (booking.status, booking.payment_status)

        await invalidate_availability(self.cache, *service.touched_ticket_types)
        return changed

    async def run(self, now: datetime) -> VerifyResult:
        result = VerifyResult()
        for booking_id in await self.find_candidates(now):
            result.checked += 1
            try:
                if await self.verify_one(booking_id):
                    result.updated += 1
            except GatewayError as e:
                result.failed += 1
                logger.warning("payment_verification_gateway_error", booking_id=booking_id, error=e.message)
            except Exception as e:
                result.failed += 1
                logger.error("payment_verification_failed", booking_id=booking_id, error=str(e))

        if result.checked:
            logger.info(
                "payment_verification_completed",
                checked=result.checked,
                updated=result.updated,
                failed=result.failed,
            )
        return result

    async def __call__(self, now: datetime) -> VerifyResult:
        return await self.run(now)


class PaymentRetentionCleaner:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, retention_days: int = 30):
        self.session_factory = session_factory
        self.retention = timedelta(days=retention_days)

    async def run(self, now: datetime) -> int:
        cutoff = now - self.retention
        stale = (
            select(PaymentRecord.id)
            .where(
                PaymentRecord.status.in_(TERMINAL_FAILURE_STATUSES),
                PaymentRecord.created_at < cutoff,
            )
            .scalar_subquery()
        )

        async with self.session_factory() as session:
            await session.execute(
                delete(PaymentEvent)
                .where(PaymentEvent.payment_id.in_(stale))
                .execution_options(synchronize_session=False)
            )
            deleted = await session.execute(
                delete(PaymentRecord).where(
                    PaymentRecord.status.in_(TERMINAL_FAILURE_STATUSES),
                    PaymentRecord.created_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        logger.info("payment_cleanup_completed", deleted=deleted.rowcount, cutoff=cutoff.isoformat())
        return deleted.rowcount

    async def __call__(self, now: datetime) -> int:
        return await self.run(now)


class BookingStatsJob:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def run(self, now: datetime) -> dict:
        async with self.session_factory() as session:
            booking_rows = await session.execute(
                select(Booking.status, func.count()).group_by(Booking.status)
            )
            payment_rows = await session.execute(
                select(PaymentRecord.status, func.count()).group_by(PaymentRecord.status)
            )
            booking_counts = dict(booking_rows.all())
            payment_counts = dict(payment_rows.all())

        for status in BOOKING_STATUSES:
            bookings_by_status.labels(status=status).set(booking_counts.get(status, 0))
        for status in PAYMENT_STATUSES:
            payments_by_status.labels(status=status).set(payment_counts.get(status, 0))

        stats = {"bookings": booking_counts, "payments": payment_counts}
        logger.info("booking_stats", **stats)
        return stats

    async def __call__(self, now: datetime) -> dict:
        return await self.run(now)
