"""
Booking service: the single state machine for a booking's lifecycle.

  pending ──confirm──> confirmed ──refund──> refunded
     │
     ├──fail/cancel──> cancelled ──retry──┐
     └──expire───────> expired ───retry───┴──> pending

INVENTORY HOLD
==============

A booking holds `quantity` units from the moment it is created. The hold is
given back exactly once, by whichever of fail/cancel/expire/refund gets there
first; `inventory_released` records that it happened. Retry takes a fresh
hold through the ledger (and can fail if the units are gone) and restarts the
hold clock (`reserved_at`).

CONCURRENCY
===========

Inventory rows are guarded by the ledger's optimistic version check. The
booking row has its own version counter (mapper version_id_col): when a
webhook and the sweeper race on the same booking, the second flush matches no
row, SQLAlchemy raises StaleDataError and the whole transaction rolls back,
release included. That surfaces as BookingConflict.

The service never commits. Callers own the transaction: one request session,
or one session per booking in the sweeper.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.clock import Clock, utcnow
from app.core.config import Settings, get_settings
from app.core.exceptions import (
    BookingAccessDenied,
    BookingConflict,
    BookingNotFound,
    EventEnded,
    GatewayError,
    InsufficientInventory,
    InvalidQuantity,
    InvalidStateTransition,
    InventoryContention,
    PaymentNotAllowed,
    RefundNotAllowed,
    SaleClosed,
    TicketNotSellable,
)
from app.core.logging import get_logger
from app.core.metrics import booking_latency, record_booking_attempt, record_transition
from app.models.booking import Booking
from app.models.payment import FUNDS_HELD_STATUSES, PaymentEvent, PaymentRecord
from app.models.user import User
from app.services import inventory_service
from app.services.booking_state import (
    BookingStateMachine,
    BookingStatus,
    PaymentState,
    can_cancel,
    can_retry,
    generate_booking_code,
    generate_payment_reference,
    is_releasable,
)
from app.services.event_service import ensure_not_ended, get_event
from app.services.interfaces.payment_gateway import (
    BillingData,
    OrderRef,
    PaymentGateway,
    PaymentToken,
    TransactionStatus,
)
from app.services.notifications import Notifier, notify
from app.services.ticket_tokens import TicketTokenIssuer

logger = get_logger(__name__)

MAX_CODE_ATTEMPTS = 5

# PaymentRecord status -> timestamp column written on first entry
_PAYMENT_TIMESTAMPS = {
    "authorized": "authorized_at",
    "captured": "captured_at",
    "failed": "failed_at",
    "cancelled": "failed_at",
    "expired": "expired_at",
}


@dataclass(frozen=True)
class AttendeeInfo:
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass(frozen=True)
class PaymentDetails:
    """What a gateway told us about a transaction."""

    transaction_id: Optional[str] = None
    amount_cents: Optional[int] = None
    source: str = "webhook"
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_transaction(cls, tx: TransactionStatus, source: str) -> "PaymentDetails":
        return cls(
            transaction_id=tx.transaction_id,
            amount_cents=tx.amount_cents,
            source=source,
            raw=tx.raw,
        )


def _split_name(full_name: str) -> tuple[str, str]:
    first, _, last = full_name.strip().partition(" ")
    return first or "NA", last or "NA"


class BookingService:
    """Coordinates the ledger, the gateway and the booking/payment rows."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway,
        *,
        notifier: Optional[Notifier] = None,
        ticket_tokens: Optional[TicketTokenIssuer] = None,
        clock: Clock = utcnow,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier
        self.ticket_tokens = ticket_tokens
        self.clock = clock
        self.settings = settings or get_settings()
        self.expiry_window = timedelta(minutes=self.settings.BOOKING_EXPIRY_MINUTES)
        # Ticket types whose availability changed; callers invalidate caches after commit
        self.touched_ticket_types: set[int] = set()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_by_code(self, booking_code: str) -> Booking:
        result = await self.db.execute(select(Booking).where(Booking.booking_code == booking_code))
        booking = result.scalar_one_or_none()
        if not booking:
            raise BookingNotFound(f"Booking {booking_code} not found", booking_code=booking_code)
        return booking

    async def get_by_order_id(self, order_id: str) -> Optional[Booking]:
        result = await self.db.execute(select(Booking).where(Booking.payment_order_id == order_id))
        return result.scalar_one_or_none()

    async def get_for_user(self, booking_code: str, user: User, *, allow_organizer: bool = True) -> Booking:
        """Booking visible to its owner and, optionally, to the event's organizer."""
        booking = await self.get_by_code(booking_code)
        if booking.user_id == user.id:
            return booking
        if allow_organizer and await self._is_organizer(booking, user):
            return booking
        raise BookingAccessDenied("You do not have access to this booking", booking_code=booking_code)

    async def list_for_user(self, user_id: int) -> list[Booking]:
        result = await self.db.execute(
            select(Booking)
            .where(Booking.user_id == user_id)
            .order_by(Booking.created_at.desc(), Booking.id.desc())
        )
        return list(result.scalars().all())

    async def get_payment(self, booking: Booking) -> Optional[PaymentRecord]:
        result = await self.db.execute(select(PaymentRecord).where(PaymentRecord.booking_id == booking.id))
        return result.scalar_one_or_none()

    async def payment_summary(self, booking: Booking) -> dict:
        payment = await self.get_payment(booking)
        expires_at = None
        if is_releasable(booking.status, booking.payment_status):
            expires_at = booking.reserved_at + self.expiry_window

        return {
            "booking_code": booking.booking_code,
            "status": booking.status,
            "payment_status": booking.payment_status,
            "payment_method": booking.payment_method,
            "total_price_cents": booking.total_price_cents,
            "currency": booking.currency,
            "payment_date": booking.payment_date,
            "reserved_at": booking.reserved_at,
            "expires_at": expires_at,
            "retry_count": booking.retry_count,
            "can_retry": can_retry(booking.status, booking.payment_status)
            and (payment is None or payment.status not in FUNDS_HELD_STATUSES),
            "can_cancel": can_cancel(booking.status, booking.payment_status),
            "payment": payment,
        }

    async def _is_organizer(self, booking: Booking, user: User) -> bool:
        event = await get_event(self.db, booking.event_id)
        return event.organizer_id == user.id

    # ------------------------------------------------------------------
    # Creation and payment initiation
    # ------------------------------------------------------------------

    async def create_booking(
        self,
        user: User,
        event_id: int,
        ticket_type_id: int,
        quantity: int,
        attendee: Optional[AttendeeInfo] = None,
        payment_method: str = "card",
    ) -> Booking:
        """
        Reserve inventory and persist a pending booking in one transaction.
        Nothing is committed here; a failure anywhere leaves no trace.
        """
        with booking_latency.time():
            try:
                return await self._create_booking(
                    user, event_id, ticket_type_id, quantity, attendee or AttendeeInfo(), payment_method
                )
            except InsufficientInventory:
                record_booking_attempt("sold_out")
                raise
            except (SaleClosed, TicketNotSellable, EventEnded):
                record_booking_attempt("closed")
                raise
            except InventoryContention:
                record_booking_attempt("contention")
                raise

    async def _create_booking(
        self,
        user: User,
        event_id: int,
        ticket_type_id: int,
        quantity: int,
        attendee: AttendeeInfo,
        payment_method: str,
    ) -> Booking:
        if quantity < 1 or quantity > self.settings.MAX_TICKETS_PER_BOOKING:
            raise InvalidQuantity(
                f"Quantity must be between 1 and {self.settings.MAX_TICKETS_PER_BOOKING}",
                quantity=quantity,
            )

        now = self.clock()
        event = await get_event(self.db, event_id)
        ensure_not_ended(event, now)

        ticket = await inventory_service.get_ticket_type(self.db, ticket_type_id)
        if ticket is None or ticket.event_id != event.id:
            raise TicketNotSellable(
                f"Ticket type {ticket_type_id} is not sold for event {event_id}",
                ticket_type_id=ticket_type_id,
            )
        unit_price = ticket.price_cents
        currency = ticket.currency

        await inventory_service.reserve(
            self.db,
            ticket_type_id,
            quantity,
            now=now,
            max_attempts=self.settings.INVENTORY_MAX_RETRIES,
        )
        self.touched_ticket_types.add(ticket_type_id)

        booking = Booking(
            booking_code=await self._unique_booking_code(now),
            user_id=user.id,
            event_id=event.id,
            ticket_type_id=ticket_type_id,
            quantity=quantity,
            total_price_cents=unit_price * quantity,
            currency=currency,
            status=BookingStatus.PENDING.value,
            payment_status=PaymentState.PENDING.value,
            payment_method=payment_method,
            attendee_name=attendee.name or user.name,
            attendee_email=attendee.email or user.email,
            attendee_phone=attendee.phone or user.phone,
            reserved_at=now,
            inventory_released=False,
            retry_count=0,
        )
        self.db.add(booking)
        await self._flush()

        record_booking_attempt("success")
        record_transition(BookingStatus.PENDING.value)
        logger.info(
            "booking_created",
            booking_id=booking.id,
            booking_code=booking.booking_code,
            user_id=user.id,
            event_id=event.id,
            ticket_type_id=ticket_type_id,
            quantity=quantity,
            total_price_cents=booking.total_price_cents,
        )
        return booking

    async def _unique_booking_code(self, now: datetime) -> str:
        for _ in range(MAX_CODE_ATTEMPTS):
            code = generate_booking_code(now)
            taken = await self.db.execute(select(Booking.id).where(Booking.booking_code == code))
            if taken.scalar_one_or_none() is None:
                return code
            logger.info("booking_code_collision", booking_code=code)
        # The unique constraint still has the final word
        return generate_booking_code(now)

    async def _unique_payment_reference(self, now: datetime) -> str:
        for _ in range(MAX_CODE_ATTEMPTS):
            reference = generate_payment_reference(now)
            taken = await self.db.execute(select(PaymentRecord.id).where(PaymentRecord.reference == reference))
            if taken.scalar_one_or_none() is None:
                return reference
        return generate_payment_reference(now)

    async def initiate_payment(self, booking: Booking, billing_user: User) -> PaymentToken:
        """
        Hand out a payment key for a booking awaiting payment.

        A booking has one gateway order for its whole life; every initiation
        (first attempt, re-initiation, after a retry) mints a new payment key
        against it, so a late callback for an earlier key still finds the booking.
        """
        if booking.status != BookingStatus.PENDING.value or booking.payment_status != PaymentState.PENDING.value:
            raise PaymentNotAllowed(
                f"Booking {booking.booking_code} is not awaiting payment",
                booking_code=booking.booking_code,
            )

        now = self.clock()
        payment = await self._ensure_payment_record(booking, now)
        if payment.status in FUNDS_HELD_STATUSES:
            raise PaymentNotAllowed(
                f"Booking {booking.booking_code} already has a {payment.status} payment",
                booking_code=booking.booking_code,
            )

        if booking.payment_order_id:
            order = OrderRef(
                order_id=booking.payment_order_id,
                amount_cents=booking.total_price_cents,
                currency=booking.currency,
                merchant_order_id=payment.reference,
            )
        else:
            order = await self.gateway.create_order(
                booking.total_price_cents,
                booking.currency,
                items=[
                    {
                        "name": f"Ticket #{booking.ticket_type_id}",
                        "amount_cents": str(booking.total_price_cents // booking.quantity),
                        "quantity": booking.quantity,
                    }
                ],
                merchant_order_id=payment.reference,
            )
            await self.attach_payment_order(booking, order, payment=payment)

        first_name, last_name = _split_name(booking.attendee_name)
        billing = BillingData(
            first_name=first_name,
            last_name=last_name,
            email=booking.attendee_email,
            phone=booking.attendee_phone or billing_user.phone or "NA",
        )
        token = await self.gateway.create_payment_key(
            order, billing, booking.total_price_cents, booking.payment_method
        )

        self._append_event(payment, "payment_key_issued", now, {
            "order_id": order.order_id,
            "integration_id": token.integration_id,
            "gateway": self.gateway.name,
        })
        await self._flush()

        logger.info(
            "payment_initiated",
            booking_code=booking.booking_code,
            order_id=order.order_id,
            gateway=self.gateway.name,
        )
        return token

    async def attach_payment_order(
        self,
        booking: Booking,
        order: OrderRef,
        *,
        payment: Optional[PaymentRecord] = None,
    ) -> PaymentRecord:
        """Store the gateway order id on the booking and its payment record."""
        now = self.clock()
        payment = payment or await self._ensure_payment_record(booking, now)

        booking.payment_order_id = order.order_id
        payment.gateway_order_id = order.order_id
        self._append_event(payment, "payment_order_created", now, {
            "order_id": order.order_id,
            "merchant_order_id": order.merchant_order_id,
            "amount_cents": order.amount_cents,
        })
        await self._flush()
        return payment

    # ------------------------------------------------------------------
    # Gateway outcomes
    # ------------------------------------------------------------------

    async def confirm_payment(self, booking: Booking, details: PaymentDetails) -> Booking:
        now = self.clock()

        if booking.status in (BookingStatus.CONFIRMED.value, BookingStatus.REFUNDED.value):
            logger.info("confirm_ignored", booking_code=booking.booking_code, status=booking.status)
            return booking

        if booking.status in (BookingStatus.CANCELLED.value, BookingStatus.EXPIRED.value):
            await self._record_capture_after_release(booking, details, now)
            return booking

        BookingStateMachine.validate_transition(BookingStatus(booking.status), BookingStatus.CONFIRMED)

        booking.status = BookingStatus.CONFIRMED.value
        booking.payment_status = PaymentState.COMPLETED.value
        booking.payment_date = now

        payment = await self._ensure_payment_record(booking, now)
        self._record_gateway_details(payment, details, now)
        self._set_payment_status(payment, "captured", now, data={
            "transaction_id": details.transaction_id,
            "source": details.source,
        })

        if self.ticket_tokens is not None:
            ticket = self.ticket_tokens.issue(
                {
                    "booking_id": booking.id,
                    "booking_code": booking.booking_code,
                    "event_id": booking.event_id,
                    "user_id": booking.user_id,
                    "ticket_type_id": booking.ticket_type_id,
                    "quantity": booking.quantity,
                    "attendee_name": booking.attendee_name,
                    "attendee_email": booking.attendee_email,
                },
                issued_at=now,
            )
            booking.qr_code = ticket.verification_url

        await self._flush()

        record_transition(BookingStatus.CONFIRMED.value)
        logger.info(
            "booking_confirmed",
            booking_code=booking.booking_code,
            transaction_id=details.transaction_id,
            source=details.source,
        )
        await self._notify(
            booking,
            f"Booking {booking.booking_code} confirmed",
            f"Your {booking.quantity} ticket(s) are confirmed. Show this link at the door: {booking.qr_code or ''}",
        )
        return booking

    async def _record_capture_after_release(self, booking: Booking, details: PaymentDetails, now: datetime) -> None:
        """
        Money arrived for a hold we already gave back. The booking stays where
        it is; the capture goes on the payment record for a manual refund.
        """
        payment = await self._ensure_payment_record(booking, now)
        if payment.status == "captured":
            logger.info("capture_after_release_duplicate", booking_code=booking.booking_code)
            return

        self._record_gateway_details(payment, details, now)
        self._set_payment_status(payment, "captured", now, event="capture_after_release", data={
            "transaction_id": details.transaction_id,
            "booking_status": booking.status,
            "source": details.source,
        })
        await self._flush()

        logger.warning(
            "payment_captured_after_release",
            booking_code=booking.booking_code,
            booking_status=booking.status,
            transaction_id=details.transaction_id,
            amount_cents=details.amount_cents,
        )

    async def fail_payment(self, booking: Booking, details: PaymentDetails) -> Booking:
        now = self.clock()

        if booking.payment_status == PaymentState.COMPLETED.value:
            # A late failure never undoes a confirmed payment
            logger.warning(
                "fail_ignored_payment_completed",
                booking_code=booking.booking_code,
                transaction_id=details.transaction_id,
            )
            return booking

        if not is_releasable(booking.status, booking.payment_status):
            logger.info("fail_ignored_not_pending", booking_code=booking.booking_code, status=booking.status)
            return booking

        BookingStateMachine.validate_transition(BookingStatus(booking.status), BookingStatus.CANCELLED)

        booking.status = BookingStatus.CANCELLED.value
        booking.payment_status = PaymentState.FAILED.value
        booking.cancelled_at = now
        await self._release_hold(booking, now)

        payment = await self._ensure_payment_record(booking, now)
        self._record_gateway_details(payment, details, now)
        self._set_payment_status(payment, "failed", now, data={
            "transaction_id": details.transaction_id,
            "source": details.source,
        })
        await self._flush()

        record_transition(BookingStatus.CANCELLED.value)
        logger.info("payment_failed", booking_code=booking.booking_code, transaction_id=details.transaction_id)
        await self._notify(
            booking,
            f"Payment for booking {booking.booking_code} failed",
            "Your payment did not go through and the tickets were released. You can retry the booking.",
        )
        return booking

    async def mark_processing(self, booking: Booking, details: PaymentDetails) -> Booking:
        if booking.status != BookingStatus.PENDING.value or booking.payment_status != PaymentState.PENDING.value:
            return booking

        now = self.clock()
        booking.payment_status = PaymentState.PROCESSING.value
        payment = await self._ensure_payment_record(booking, now)
        self._record_gateway_details(payment, details, now)
        self._set_payment_status(payment, "processing", now, data={"transaction_id": details.transaction_id})
        await self._flush()

        logger.info("payment_processing", booking_code=booking.booking_code)
        return booking

    async def apply_transaction(self, booking: Booking, tx: TransactionStatus, source: str) -> Booking:
        """Route a gateway transaction to confirm / processing / fail."""
        details = PaymentDetails.from_transaction(tx, source)

        if tx.success:
            if tx.amount_cents != booking.total_price_cents:
                logger.error(
                    "payment_amount_mismatch",
                    booking_code=booking.booking_code,
                    expected=booking.total_price_cents,
                    received=tx.amount_cents,
                )
                now = self.clock()
                payment = await self._ensure_payment_record(booking, now)
                self._append_event(payment, "amount_mismatch", now, {
                    "transaction_id": details.transaction_id,
                    "expected_cents": booking.total_price_cents,
                    "received_cents": tx.amount_cents,
                    "currency": tx.currency,
                    "source": source,
                })
                await self._flush()
                return booking
            return await self.confirm_payment(booking, details)
        if tx.pending:
            return await self.mark_processing(booking, details)
        return await self.fail_payment(booking, details)

    async def verify_with_gateway(self, booking: Booking) -> Optional[TransactionStatus]:
        """Ask the gateway about the booking's order and apply what it says."""
        if not booking.payment_order_id:
            return None

        tx = await self.gateway.inquire_transaction(booking.payment_order_id)
        if tx is None:
            logger.info("payment_inquiry_empty", booking_code=booking.booking_code)
            return None

        await self.apply_transaction(booking, tx, source="inquiry")
        return tx

    # ------------------------------------------------------------------
    # User/organizer/sweeper actions
    # ------------------------------------------------------------------

    async def cancel_booking(self, booking: Booking) -> Booking:
        if booking.status == BookingStatus.CANCELLED.value:
            return booking

        if not can_cancel(booking.status, booking.payment_status):
            raise InvalidStateTransition(
                from_state=booking.status,
                to_state=BookingStatus.CANCELLED.value,
                booking_code=booking.booking_code,
            )

        now = self.clock()
        booking.status = BookingStatus.CANCELLED.value
        booking.payment_status = PaymentState.FAILED.value
        booking.cancelled_at = now
        await self._release_hold(booking, now)

        payment = await self.get_payment(booking)
        if payment is not None:
            self._set_payment_status(payment, "cancelled", now, data={"reason": "cancelled_by_user"})
        await self._flush()

        record_transition(BookingStatus.CANCELLED.value)
        logger.info("booking_cancelled", booking_code=booking.booking_code, quantity_released=booking.quantity)
        return booking

    async def expire_booking(self, booking: Booking, *, reserved_before: Optional[datetime] = None) -> bool:
        """
        Expire a pending booking and release its hold.

        Returns False (and changes nothing) when the booking is no longer
        expirable, or when `reserved_before` is given and its hold is newer.
        """
        if not is_releasable(booking.status, booking.payment_status):
            return False
        if reserved_before is not None and booking.reserved_at >= reserved_before:
            return False

        now = self.clock()
        BookingStateMachine.validate_transition(BookingStatus(booking.status), BookingStatus.EXPIRED)

        booking.status = BookingStatus.EXPIRED.value
        booking.payment_status = PaymentState.EXPIRED.value
        booking.expired_at = now
        await self._release_hold(booking, now)

        payment = await self.get_payment(booking)
        if payment is not None:
            self._set_payment_status(payment, "expired", now, data={"reason": "hold_timeout"})
        await self._flush()

        record_transition(BookingStatus.EXPIRED.value)
        logger.info(
            "booking_expired",
            booking_code=booking.booking_code,
            reserved_at=booking.reserved_at.isoformat(),
            quantity_released=booking.quantity,
        )
        return True

    async def retry_booking(self, booking: Booking) -> Booking:
        if not can_retry(booking.status, booking.payment_status):
            raise InvalidStateTransition(
                from_state=booking.status,
                to_state=BookingStatus.PENDING.value,
                booking_code=booking.booking_code,
            )

        # A capture that arrived after the release must be refunded, not paid again
        payment = await self.get_payment(booking)
        if payment is not None and payment.status in FUNDS_HELD_STATUSES:
            raise InvalidStateTransition(
                from_state=booking.status,
                to_state=BookingStatus.PENDING.value,
                booking_code=booking.booking_code,
                payment_status=payment.status,
            )

        BookingStateMachine.validate_transition(BookingStatus(booking.status), BookingStatus.PENDING)

        now = self.clock()
        event = await get_event(self.db, booking.event_id)
        ensure_not_ended(event, now)

        if booking.inventory_released:
            await inventory_service.reserve(
                self.db,
                booking.ticket_type_id,
                booking.quantity,
                now=now,
                max_attempts=self.settings.INVENTORY_MAX_RETRIES,
            )
            self.touched_ticket_types.add(booking.ticket_type_id)
            booking.inventory_released = False

        previous_status = booking.status
        booking.status = BookingStatus.PENDING.value
        booking.payment_status = PaymentState.PENDING.value
        booking.payment_date = None
        booking.cancelled_at = None
        booking.expired_at = None
        booking.reserved_at = now
        booking.retry_count += 1

        if payment is not None:
            self._set_payment_status(payment, "pending", now, event="payment_retry", data={
                "previous_status": previous_status,
                "retry_count": booking.retry_count,
            })
        await self._flush()

        record_transition(BookingStatus.PENDING.value)
        logger.info(
            "booking_retried",
            booking_code=booking.booking_code,
            previous_status=previous_status,
            retry_count=booking.retry_count,
        )
        return booking

    async def refund_booking(
        self,
        booking: Booking,
        actor: User,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> PaymentRecord:
        """
        Organizer-initiated refund of a confirmed booking. Refunds accumulate;
        the one that reaches the full amount moves the booking to refunded and
        gives its tickets back.
        """
        if not await self._is_organizer(booking, actor):
            raise BookingAccessDenied("Only the event organizer can refund bookings", booking_code=booking.booking_code)

        if booking.status != BookingStatus.CONFIRMED.value:
            raise RefundNotAllowed(
                f"Only confirmed bookings can be refunded (status: {booking.status})",
                booking_code=booking.booking_code,
            )

        now = self.clock()
        payment = await self.get_payment(booking)
        if payment is None or not payment.can_refund:
            raise RefundNotAllowed("Booking has no refundable payment", booking_code=booking.booking_code)
        if not payment.transaction_id:
            raise RefundNotAllowed("Payment has no captured transaction to refund", booking_code=booking.booking_code)

        remaining = payment.amount_cents - payment.refund_amount_cents
        amount = remaining if amount_cents is None else amount_cents
        if amount <= 0 or amount > remaining:
            raise RefundNotAllowed(
                f"Refund amount must be between 1 and {remaining}",
                booking_code=booking.booking_code,
            )

        result = await self.gateway.refund(payment.transaction_id, amount)
        if not result.success:
            raise GatewayError("Payment gateway declined the refund", booking_code=booking.booking_code)

        payment.refund_amount_cents += amount
        payment.refund_reason = reason
        payment.refunded_at = now
        full_refund = payment.refund_amount_cents == payment.amount_cents

        if full_refund:
            BookingStateMachine.validate_transition(BookingStatus.CONFIRMED, BookingStatus.REFUNDED)
            booking.status = BookingStatus.REFUNDED.value
            booking.payment_status = PaymentState.REFUNDED.value
            await self._release_hold(booking, now)
            self._set_payment_status(payment, "refunded", now, data={"amount_cents": amount, "reason": reason})
        else:
            self._set_payment_status(payment, "partially_refunded", now, data={
                "amount_cents": amount,
                "reason": reason,
            })
        await self._flush()

        if full_refund:
            record_transition(BookingStatus.REFUNDED.value)
        logger.info(
            "booking_refunded",
            booking_code=booking.booking_code,
            amount_cents=amount,
            refunded_total=payment.refund_amount_cents,
            full=full_refund,
        )
        await self._notify(
            booking,
            f"Refund for booking {booking.booking_code}",
            f"{amount / 100:.2f} {booking.currency} has been refunded to you.",
        )
        return payment

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _release_hold(self, booking: Booking, now: datetime) -> bool:
        if booking.inventory_released:
            return False
        await inventory_service.release(
            self.db,
            booking.ticket_type_id,
            booking.quantity,
            now=now,
            max_attempts=self.settings.INVENTORY_MAX_RETRIES,
        )
        booking.inventory_released = True
        self.touched_ticket_types.add(booking.ticket_type_id)
        return True

    async def _ensure_payment_record(self, booking: Booking, now: datetime) -> PaymentRecord:
        payment = await self.get_payment(booking)
        if payment is not None:
            return payment

        payment = PaymentRecord(
            booking_id=booking.id,
            user_id=booking.user_id,
            reference=await self._unique_payment_reference(now),
            gateway_order_id=booking.payment_order_id,
            payment_method=booking.payment_method,
            amount_cents=booking.total_price_cents,
            currency=booking.currency,
            status="pending",
            gateway_response={},
            refund_amount_cents=0,
            webhook_verified=False,
            events=[],
        )
        self.db.add(payment)
        await self._flush()
        self._append_event(payment, "payment_created", now, {"reference": payment.reference})
        return payment

    def _append_event(self, payment: PaymentRecord, event: str, now: datetime, data: Optional[dict] = None) -> None:
        payment.events.append(PaymentEvent(event=event, data=data or {}, created_at=now))

    def _set_payment_status(
        self,
        payment: PaymentRecord,
        status: str,
        now: datetime,
        *,
        event: Optional[str] = None,
        data: Optional[dict] = None,
    ) -> None:
        payment.status = status
        stamp = _PAYMENT_TIMESTAMPS.get(status)
        if stamp and getattr(payment, stamp) is None:
            setattr(payment, stamp, now)
        self._append_event(payment, event or f"payment_{status}", now, data)

    def _record_gateway_details(self, payment: PaymentRecord, details: PaymentDetails, now: datetime) -> None:
        if details.transaction_id:
            payment.transaction_id = details.transaction_id
        if details.raw:
            payment.gateway_response = details.raw
        if details.source == "webhook":
            payment.webhook_verified = True
            payment.webhook_received_at = now

    async def _flush(self) -> None:
        try:
            await self.db.flush()
        except StaleDataError as e:
            logger.warning("booking_conflict", error=str(e))
            raise BookingConflict("Booking was modified concurrently. Please try again.") from e

    async def _notify(self, booking: Booking, subject: str, body: str) -> None:
        if self.notifier is None:
            return
        await notify(self.notifier, booking.attendee_email, subject, body)
