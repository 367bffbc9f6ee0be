"""
Tests for the booking service: creation, payment outcomes, cancel/expire/retry,
refunds, and the exactly-once release of inventory holds.

Every step runs in its own session and commits, the way separate requests
and the sweeper would.
"""

from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import (
    BookingAccessDenied,
    BookingConflict,
    EventEnded,
    InsufficientInventory,
    InvalidQuantity,
    InvalidStateTransition,
    PaymentNotAllowed,
    RefundNotAllowed,
    TicketNotSellable,
)
from app.models.booking import Booking
from app.models.user import User
from app.services.booking_service import AttendeeInfo, BookingService, PaymentDetails
from app.services.interfaces.payment_gateway import parse_transaction
from app.services.notifications import Notifier

from conftest import T0


@pytest.fixture
def apply_tx(session_factory, make_service):
    """Applies a gateway transaction to a booking in a fresh session."""

    async def _apply(booking_code: str, transaction: dict, source: str = "webhook") -> Booking:
        async with session_factory() as session:
            service = make_service(session)
            booking = await service.get_by_code(booking_code)
            await service.apply_transaction(booking, parse_transaction(transaction), source)
            await session.commit()
            return booking

    return _apply


@pytest.fixture
def run_action(session_factory, make_service):
    """Runs one service method against a freshly loaded booking and commits."""

    async def _run(booking_code: str, action: str, *args, **kwargs):
        async with session_factory() as session:
            service = make_service(session)
            booking = await service.get_by_code(booking_code)
            result = await getattr(service, action)(booking, *args, **kwargs)
            await session.commit()
            return result

    return _run


# ----------------------------------------------------------------------
# Creation
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_booking_reserves_and_snapshots(create_booking, ticket_type, test_user, fetch_ticket):
    """A new booking is pending, priced from the ticket type and holds its units."""
    booking = await create_booking(ticket_type, quantity=3, initiate=False)

    assert booking.status == "pending"
    assert booking.payment_status == "pending"
    assert booking.quantity == 3
    assert booking.total_price_cents == 75_000
    assert booking.currency == "EGP"
    assert booking.reserved_at == T0
    assert booking.inventory_released is False
    assert booking.retry_count == 0
    assert booking.attendee_name == test_user.name
    assert booking.attendee_email == test_user.email
    assert booking.booking_code.startswith("BK-")

    ticket = await fetch_ticket(ticket_type.id)
    assert ticket.available_quantity == 97


@pytest.mark.asyncio
async def test_create_booking_with_attendee(session_factory, make_service, test_user, test_event, ticket_type):
    """Explicit attendee details override the account's."""
    async with session_factory() as session:
        service = make_service(session)
        user = await session.get(User, test_user.id)
        booking = await service.create_booking(
            user,
            test_event.id,
            ticket_type.id,
            1,
            attendee=AttendeeInfo(name="Guest Person", email="guest@example.com", phone="+201234"),
            payment_method="wallet",
        )
        await session.commit()

    assert booking.attendee_name == "Guest Person"
    assert booking.attendee_email == "guest@example.com"
    assert booking.attendee_phone == "+201234"
    assert booking.payment_method == "wallet"


@pytest.mark.asyncio
@pytest.mark.parametrize("quantity", [0, -1, 11])
async def test_create_booking_quantity_bounds(session_factory, make_service, test_user, test_event, ticket_type, quantity):
    async with session_factory() as session:
        service = make_service(session)
        with pytest.raises(InvalidQuantity):
            await service.create_booking(test_user, test_event.id, ticket_type.id, quantity)


@pytest.mark.asyncio
async def test_create_booking_for_ended_event(session_factory, make_service, test_user, past_event, past_ticket):
    async with session_factory() as session:
        service = make_service(session)
        with pytest.raises(EventEnded):
            await service.create_booking(test_user, past_event.id, past_ticket.id, 1)


@pytest.mark.asyncio
async def test_create_booking_ticket_of_other_event(session_factory, make_service, test_user, test_event, past_ticket):
    """A ticket type can only be booked under its own event."""
    async with session_factory() as session:
        service = make_service(session)
        with pytest.raises(TicketNotSellable):
            await service.create_booking(test_user, test_event.id, past_ticket.id, 1)


@pytest.mark.asyncio
async def test_sold_out_leaves_no_booking(session_factory, make_service, test_user, test_event, sold_out_ticket):
    """A failed reservation persists nothing."""
    async with session_factory() as session:
        service = make_service(session)
        with pytest.raises(InsufficientInventory):
            await service.create_booking(test_user, test_event.id, sold_out_ticket.id, 1)
        await session.rollback()

    async with session_factory() as session:
        count = await session.scalar(select(func.count()).select_from(Booking))
    assert count == 0


# ----------------------------------------------------------------------
# Payment initiation
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_initiate_payment_creates_order_and_record(create_booking, ticket_type, fetch_payment, fetch_payment_events):
    booking = await create_booking(ticket_type)

    assert booking.payment_order_id.startswith("offline-")
    payment = await fetch_payment(booking.id)
    assert payment.status == "pending"
    assert payment.gateway_order_id == booking.payment_order_id
    assert payment.amount_cents == booking.total_price_cents
    assert payment.reference.startswith("PAY-")
    assert await fetch_payment_events(payment.id) == [
        "payment_created",
        "payment_order_created",
        "payment_key_issued",
    ]


@pytest.mark.asyncio
async def test_reinitiate_reuses_gateway_order(create_booking, ticket_type, test_user, run_action, fetch_booking):
    """A second payment key is minted against the same gateway order."""
    booking = await create_booking(ticket_type)

    token = await run_action(booking.booking_code, "initiate_payment", test_user)

    assert token.order_id == booking.payment_order_id
    refreshed = await fetch_booking(booking.booking_code)
    assert refreshed.payment_order_id == booking.payment_order_id


@pytest.mark.asyncio
async def test_initiate_payment_rejected_once_settled(
    create_booking, ticket_type, test_user, apply_tx, make_transaction, run_action
):
    booking = await create_booking(ticket_type)
    await apply_tx(booking.booking_code, make_transaction(booking, success=True))

    with pytest.raises(PaymentNotAllowed):
        await run_action(booking.booking_code, "initiate_payment", test_user)


# ----------------------------------------------------------------------
# Gateway outcomes
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_success_confirms_and_issues_ticket(
    create_booking, ticket_type, apply_tx, make_transaction, fetch_payment, ticket_tokens, notifier
):
    booking = await create_booking(ticket_type, quantity=2)

    confirmed = await apply_tx(booking.booking_code, make_transaction(booking, success=True, tx_id=555))

    assert confirmed.status == "confirmed"
    assert confirmed.payment_status == "completed"
    assert confirmed.payment_date == T0
    assert confirmed.is_valid

    token = parse_qs(urlparse(confirmed.qr_code).query)["token"][0]
    claims = ticket_tokens.decode(token)
    assert claims["booking_code"] == booking.booking_code
    assert claims["quantity"] == 2
    assert claims["event_id"] == booking.event_id

    payment = await fetch_payment(booking.id)
    assert payment.status == "captured"
    assert payment.transaction_id == "555"
    assert payment.captured_at == T0
    assert payment.webhook_verified is True

    assert any(booking.booking_code in subject and "confirmed" in subject for _, subject, _ in notifier.sent)


@pytest.mark.asyncio
async def test_duplicate_success_is_noop(
    create_booking, ticket_type, apply_tx, make_transaction, fetch_payment, fetch_payment_events, fetch_ticket
):
    booking = await create_booking(ticket_type)
    tx = make_transaction(booking, success=True)

    await apply_tx(booking.booking_code, tx)
    payment = await fetch_payment(booking.id)
    events_before = await fetch_payment_events(payment.id)

    again = await apply_tx(booking.booking_code, tx)

    assert again.status == "confirmed"
    assert await fetch_payment_events(payment.id) == events_before
    ticket = await fetch_ticket(ticket_type.id)
    assert ticket.available_quantity == 99


@pytest.mark.asyncio
async def test_failure_after_success_is_ignored(
    create_booking, ticket_type, apply_tx, make_transaction, fetch_booking, fetch_ticket
):
    """A late failure callback never undoes a confirmed payment."""
    booking = await create_booking(ticket_type)
    await apply_tx(booking.booking_code, make_transaction(booking, success=True))

    await apply_tx(booking.booking_code, make_transaction(booking, success=False, tx_id=9002))

    refreshed = await fetch_booking(booking.booking_code)
    assert refreshed.status == "confirmed"
    assert refreshed.payment_status == "completed"
    ticket = await fetch_ticket(ticket_type.id)
    assert ticket.available_quantity == 99


@pytest.mark.asyncio
async def test_failure_cancels_and_releases(
    create_booking, ticket_type, apply_tx, make_transaction, fetch_ticket, fetch_payment
):
    booking = await create_booking(ticket_type, quantity=4)

    failed = await apply_tx(booking.booking_code, make_transaction(booking, success=False))

    assert failed.status == "cancelled"
    assert failed.payment_status == "failed"
    assert failed.cancelled_at == T0
    assert failed.inventory_released is True
    ticket = await fetch_ticket(ticket_type.id)
    assert ticket.available_quantity == 100
    payment = await fetch_payment(booking.id)
    assert payment.status == "failed"
    assert payment.failed_at == T0


@pytest.mark.asyncio
async def test_pending_transaction_marks_processing(create_booking, ticket_type, apply_tx, make_transaction, fetch_ticket):
    """A pending gateway transaction keeps the hold."""
    booking = await create_booking(ticket_type)

    processing = await apply_tx(booking.booking_code, make_transaction(booking, success=False, pending=True))

    assert processing.status == "pending"
    assert processing.payment_status == "processing"
    ticket = await fetch_ticket(ticket_type.id)
    assert ticket.available_quantity == 99


@pytest.mark.asyncio
async def test_amount_mismatch_does_not_confirm(
    create_booking, ticket_type, apply_tx, make_transaction, fetch_payment, fetch_payment_events
):
    booking = await create_booking(ticket_type)

    result = await apply_tx(
        booking.booking_code,
        make_transaction(booking, success=True, amount_cents=booking.total_price_cents - 1),
    )

    assert result.status == "pending"
    assert result.payment_status == "pending"
    payment = await fetch_payment(booking.id)
    assert payment.status == "pending"
    assert payment.captured_at is None
    assert (await fetch_payment_events(payment.id))[-1] == "amount_mismatch"


@pytest.mark.asyncio
async def test_success_after_expiry_is_recorded_not_resurrected(
    create_booking, ticket_type, run_action, apply_tx, make_transaction, fetch_payment, fetch_payment_events, fetch_ticket
):
    """Money for a released hold lands on the payment record; the booking stays expired."""
    booking = await create_booking(ticket_type)
    assert await run_action(booking.booking_code, "expire_booking") is True

    result = await apply_tx(booking.booking_code, make_transaction(booking, success=True))

    assert result.status == "expired"
    assert result.payment_status == "expired"
    payment = await fetch_payment(booking.id)
    assert payment.status == "captured"
    events = await fetch_payment_events(payment.id)
    assert events[-1] == "capture_after_release"
    ticket = await fetch_ticket(ticket_type.id)
    assert ticket.available_quantity == 100

    # A repeated callback adds nothing
    await apply_tx(booking.booking_code, make_transaction(booking, success=True))
    assert await fetch_payment_events(payment.id) == events


@pytest.mark.asyncio
async def test_notifier_failure_does_not_break_confirmation(
    session_factory, gateway, ticket_tokens, clock, test_settings, create_booking, ticket_type, make_transaction
):
    class BrokenNotifier(Notifier):
        async def send_email(self, to, subject, body):
            raise ConnectionError("smtp down")

    booking = await create_booking(ticket_type)
    async with session_factory() as session:
        service = BookingService(
            session, gateway, notifier=BrokenNotifier(), ticket_tokens=ticket_tokens,
            clock=clock, settings=test_settings,
        )
        loaded = await service.get_by_code(booking.booking_code)
        await service.apply_transaction(loaded, parse_transaction(make_transaction(booking, success=True)), "webhook")
        await session.commit()

    assert loaded.status == "confirmed"


# ----------------------------------------------------------------------
# Cancel / expire: exactly-once release
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancel_releases_once(create_booking, ticket_type, run_action, fetch_ticket, fetch_payment):
    booking = await create_booking(ticket_type, quantity=2)

    cancelled = await run_action(booking.booking_code, "cancel_booking")
    assert cancelled.status == "cancelled"
    assert cancelled.payment_status == "failed"

    # Cancel again, then let the sweeper and a failure callback have a go
    await run_action(booking.booking_code, "cancel_booking")
    assert await run_action(booking.booking_code, "expire_booking") is False

    ticket = await fetch_ticket(ticket_type.id)
    assert ticket.available_quantity == 100
    payment = await fetch_payment(booking.id)
    assert payment.status == "cancelled"


@pytest.mark.asyncio
async def test_failure_then_expire_releases_once(
    create_booking, limited_ticket, apply_tx, make_transaction, run_action, fetch_ticket
):
    booking = await create_booking(limited_ticket, quantity=3)
    await apply_tx(booking.booking_code, make_transaction(booking, success=False))
    await apply_tx(booking.booking_code, make_transaction(booking, success=False, tx_id=9003))
    assert await run_action(booking.booking_code, "expire_booking") is False

    ticket = await fetch_ticket(limited_ticket.id)
    assert ticket.available_quantity == 5


@pytest.mark.asyncio
async def test_cannot_cancel_confirmed(create_booking, ticket_type, apply_tx, make_transaction, run_action):
    booking = await create_booking(ticket_type)
    await apply_tx(booking.booking_code, make_transaction(booking, success=True))

    with pytest.raises(InvalidStateTransition):
        await run_action(booking.booking_code, "cancel_booking")


@pytest.mark.asyncio
async def test_expire_respects_reserved_before(create_booking, ticket_type, run_action, fetch_booking):
    """A hold newer than the cutoff is left alone."""
    booking = await create_booking(ticket_type)

    assert await run_action(booking.booking_code, "expire_booking", reserved_before=T0) is False
    assert (await fetch_booking(booking.booking_code)).status == "pending"


@pytest.mark.asyncio
async def test_expire_marks_payment_expired(create_booking, ticket_type, run_action, fetch_booking, fetch_payment):
    booking = await create_booking(ticket_type)

    assert await run_action(booking.booking_code, "expire_booking") is True

    refreshed = await fetch_booking(booking.booking_code)
    assert refreshed.status == "expired"
    assert refreshed.payment_status == "expired"
    assert refreshed.expired_at == T0
    payment = await fetch_payment(booking.id)
    assert payment.status == "expired"
    assert payment.expired_at == T0


@pytest.mark.asyncio
async def test_concurrent_confirm_and_expire_linearize(
    session_factory, make_service, create_booking, ticket_type, make_transaction, fetch_booking, fetch_ticket
):
    """
    The sweeper and a webhook load the same pending booking. The sweeper
    commits first; the webhook's write loses the version race and changes
    nothing.
    """
    booking = await create_booking(ticket_type)

    async with session_factory() as webhook_session:
        webhook_service = make_service(webhook_session)
        stale = await webhook_service.get_by_code(booking.booking_code)

        async with session_factory() as sweeper_session:
            sweeper_service = make_service(sweeper_session)
            fresh = await sweeper_service.get_by_code(booking.booking_code)
            assert await sweeper_service.expire_booking(fresh) is True
            await sweeper_session.commit()

        with pytest.raises((BookingConflict, StaleDataError)):
            await webhook_service.confirm_payment(
                stale,
                PaymentDetails.from_transaction(parse_transaction(make_transaction(booking, success=True)), "webhook"),
            )
        await webhook_session.rollback()

    refreshed = await fetch_booking(booking.booking_code)
    assert refreshed.status == "expired"
    ticket = await fetch_ticket(ticket_type.id)
    assert ticket.available_quantity == 100


# ----------------------------------------------------------------------
# Retry
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_retry_after_expiry_reserves_again(
    create_booking, ticket_type, run_action, clock, fetch_ticket, fetch_payment, fetch_payment_events
):
    booking = await create_booking(ticket_type, quantity=2)
    await run_action(booking.booking_code, "expire_booking")
    assert (await fetch_ticket(ticket_type.id)).available_quantity == 100

    retried_at = clock.advance(minutes=20)
    retried = await run_action(booking.booking_code, "retry_booking")

    assert retried.status == "pending"
    assert retried.payment_status == "pending"
    assert retried.retry_count == 1
    assert retried.reserved_at == retried_at
    assert retried.expired_at is None
    assert retried.inventory_released is False
    assert (await fetch_ticket(ticket_type.id)).available_quantity == 98

    payment = await fetch_payment(booking.id)
    assert payment.status == "pending"
    assert (await fetch_payment_events(payment.id))[-1] == "payment_retry"


@pytest.mark.asyncio
async def test_retry_when_sold_out_meanwhile(
    create_booking, limited_ticket, run_action, other_user, fetch_booking
):
    """If the released tickets were bought by someone else, retry fails and changes nothing."""
    booking = await create_booking(limited_ticket, quantity=3)
    await run_action(booking.booking_code, "cancel_booking")
    await create_booking(limited_ticket, quantity=4, user=other_user)

    with pytest.raises(InsufficientInventory):
        await run_action(booking.booking_code, "retry_booking")

    refreshed = await fetch_booking(booking.booking_code)
    assert refreshed.status == "cancelled"
    assert refreshed.retry_count == 0
    assert refreshed.inventory_released is True


@pytest.mark.asyncio
async def test_retry_pending_booking_rejected(create_booking, ticket_type, run_action):
    booking = await create_booking(ticket_type)

    with pytest.raises(InvalidStateTransition):
        await run_action(booking.booking_code, "retry_booking")


@pytest.mark.asyncio
async def test_retry_after_event_ended(create_booking, ticket_type, run_action, clock):
    booking = await create_booking(ticket_type)
    await run_action(booking.booking_code, "cancel_booking")

    clock.advance(days=31)
    with pytest.raises(EventEnded):
        await run_action(booking.booking_code, "retry_booking")


@pytest.mark.asyncio
async def test_retry_refused_after_late_capture(
    create_booking, ticket_type, run_action, apply_tx, make_transaction,
    fetch_booking, fetch_ticket, fetch_payment, fetch_payment_events,
):
    """Money captured after the release is refunded by an operator, never charged a second time."""
    booking = await create_booking(ticket_type)
    await run_action(booking.booking_code, "expire_booking")
    await apply_tx(booking.booking_code, make_transaction(booking, success=True))

    summary = await run_action(booking.booking_code, "payment_summary")
    assert summary["can_retry"] is False

    with pytest.raises(InvalidStateTransition):
        await run_action(booking.booking_code, "retry_booking")

    refreshed = await fetch_booking(booking.booking_code)
    assert refreshed.status == "expired"
    assert refreshed.retry_count == 0
    assert refreshed.inventory_released is True
    assert (await fetch_ticket(ticket_type.id)).available_quantity == 100
    payment = await fetch_payment(booking.id)
    assert payment.status == "captured"
    assert payment.captured_at is not None
    assert (await fetch_payment_events(payment.id))[-1] == "capture_after_release"


@pytest.mark.asyncio
async def test_retried_booking_can_be_paid(
    create_booking, ticket_type, run_action, apply_tx, make_transaction, test_user, fetch_booking
):
    """After a retry the same gateway order takes the payment."""
    booking = await create_booking(ticket_type)
    await apply_tx(booking.booking_code, make_transaction(booking, success=False))
    await run_action(booking.booking_code, "retry_booking")

    token = await run_action(booking.booking_code, "initiate_payment", test_user)
    assert token.order_id == booking.payment_order_id

    await apply_tx(booking.booking_code, make_transaction(booking, success=True, tx_id=9010))
    assert (await fetch_booking(booking.booking_code)).status == "confirmed"


# ----------------------------------------------------------------------
# Refunds
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_full_refund(
    create_booking, ticket_type, apply_tx, make_transaction, run_action, organizer, fetch_booking, fetch_ticket
):
    booking = await create_booking(ticket_type, quantity=2)
    await apply_tx(booking.booking_code, make_transaction(booking, success=True))

    payment = await run_action(booking.booking_code, "refund_booking", organizer, None, "event moved")

    assert payment.status == "refunded"
    assert payment.refund_amount_cents == booking.total_price_cents
    assert payment.refund_reason == "event moved"
    refreshed = await fetch_booking(booking.booking_code)
    assert refreshed.status == "refunded"
    assert refreshed.payment_status == "refunded"
    assert (await fetch_ticket(ticket_type.id)).available_quantity == 100


@pytest.mark.asyncio
async def test_partial_refunds_accumulate(
    create_booking, ticket_type, apply_tx, make_transaction, run_action, organizer, fetch_booking
):
    booking = await create_booking(ticket_type)
    await apply_tx(booking.booking_code, make_transaction(booking, success=True))

    payment = await run_action(booking.booking_code, "refund_booking", organizer, 10_000)
    assert payment.status == "partially_refunded"
    assert (await fetch_booking(booking.booking_code)).status == "confirmed"

    with pytest.raises(RefundNotAllowed):
        await run_action(booking.booking_code, "refund_booking", organizer, 20_000)

    payment = await run_action(booking.booking_code, "refund_booking", organizer, 15_000)
    assert payment.status == "refunded"
    assert payment.refund_amount_cents == 25_000
    assert (await fetch_booking(booking.booking_code)).status == "refunded"


@pytest.mark.asyncio
async def test_refund_requires_organizer(create_booking, ticket_type, apply_tx, make_transaction, run_action, test_user):
    booking = await create_booking(ticket_type)
    await apply_tx(booking.booking_code, make_transaction(booking, success=True))

    with pytest.raises(BookingAccessDenied):
        await run_action(booking.booking_code, "refund_booking", test_user)


@pytest.mark.asyncio
async def test_refund_unpaid_booking(create_booking, ticket_type, run_action, organizer):
    booking = await create_booking(ticket_type)

    with pytest.raises(RefundNotAllowed):
        await run_action(booking.booking_code, "refund_booking", organizer)


@pytest.mark.asyncio
async def test_refund_after_full_refund_rejected(
    create_booking, ticket_type, apply_tx, make_transaction, run_action, organizer
):
    booking = await create_booking(ticket_type)
    await apply_tx(booking.booking_code, make_transaction(booking, success=True))
    await run_action(booking.booking_code, "refund_booking", organizer)

    with pytest.raises(RefundNotAllowed):
        await run_action(booking.booking_code, "refund_booking", organizer)
