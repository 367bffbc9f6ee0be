"""
Inventory ledger with concurrency-safe reserve/release.

CONCURRENCY STRATEGY: Optimistic Locking with Retry
====================================================

Problem:
  Two users try to book the last ticket simultaneously.
  Both read available_quantity=1, both decrement to 0, both succeed.
  Result: Oversell.

Solution:
  Every ticket type row carries a `version` column.

  1. Read the row's current version, counter and sale window
  2. UPDATE ticket_types
       SET available_quantity = available_quantity - N,
           status = <derived>, version = version + 1
     WHERE id = :id AND version = :current_version AND available_quantity >= N
  3. If rows_affected == 0, someone else committed first -> re-read and retry

  The derived status is computed from the values the UPDATE is guarded on,
  so counter and status can never disagree. The CHECK constraints on the
  table (0 <= available <= total) are the last line of defence.

  Reserve runs inside the caller's transaction: the booking insert and the
  decrement commit or roll back together. Release is the mirror image and is
  capped at total capacity; making release happen only once per hold is the
  booking state machine's job, not the ledger's.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    InsufficientInventory,
    InventoryContention,
    SaleClosed,
    TicketNotSellable,
    TicketTypeNotFound,
)
from app.core.logging import get_logger
from app.core.metrics import record_inventory_retry
from app.models.ticket import TicketInventory

logger = get_logger(__name__)

MAX_RETRY_ATTEMPTS = 3


@dataclass(frozen=True)
class ReservationResult:
    ticket_type_id: int
    quantity: int
    available: int
    status: str


def derive_ticket_status(
    available: int,
    sale_end: datetime,
    current_status: str,
    now: datetime,
) -> str:
    """
    Status as a function of the counter and the sale window.
    `cancelled` is set by the organizer and is never overridden here.
    """
    if current_status == "cancelled":
        return "cancelled"
    if available <= 0:
        return "sold_out"
    if now > sale_end:
        return "sale_ended"
    return "active"


def is_on_sale(ticket: TicketInventory, now: datetime) -> bool:
    return ticket.sale_start <= now <= ticket.sale_end


async def get_ticket_type(db: AsyncSession, ticket_type_id: int) -> Optional[TicketInventory]:
    """Fresh read of a ticket type, bypassing whatever the identity map holds."""
    result = await db.execute(
        select(TicketInventory)
        .where(TicketInventory.id == ticket_type_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _apply_delta(
    db: AsyncSession,
    ticket: TicketInventory,
    delta: int,
    new_available: int,
    now: datetime,
) -> tuple[bool, str]:
    new_status = derive_ticket_status(new_available, ticket.sale_end, ticket.status, now)

    conditions = [
        TicketInventory.id == ticket.id,
        TicketInventory.version == ticket.version,
    ]
    if delta < 0:
        conditions.append(TicketInventory.available_quantity >= -delta)

    update_result = await db.execute(
        update(TicketInventory)
        .where(*conditions)
        .values(
            available_quantity=new_available,
            status=new_status,
            version=TicketInventory.version + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return update_result.rowcount == 1, new_status


async def reserve(
    db: AsyncSession,
    ticket_type_id: int,
    quantity: int,
    *,
    now: datetime,
    max_attempts: int = MAX_RETRY_ATTEMPTS,
) -> ReservationResult:
    """
    Take `quantity` units out of a ticket type's inventory.
    Retries up to max_attempts on version conflicts.
    """
    if quantity < 1:
        raise ValueError("quantity must be at least 1")

    for attempt in range(1, max_attempts + 1):
        ticket = await get_ticket_type(db, ticket_type_id)

        if not ticket or ticket.status == "cancelled":
            raise TicketNotSellable(
                f"Ticket type {ticket_type_id} is not available for sale",
                ticket_type_id=ticket_type_id,
            )

        if not is_on_sale(ticket, now):
            raise SaleClosed(
                f"Ticket type {ticket_type_id} is outside its sale window",
                ticket_type_id=ticket_type_id,
            )

        if ticket.available_quantity < quantity:
            logger.warning(
                "reserve_failed_insufficient",
                ticket_type_id=ticket_type_id,
                requested=quantity,
                available=ticket.available_quantity,
            )
            raise InsufficientInventory(
                f"Not enough tickets. Requested: {quantity}, Available: {ticket.available_quantity}",
                ticket_type_id=ticket_type_id,
            )

        new_available = ticket.available_quantity - quantity
        applied, new_status = await _apply_delta(db, ticket, -quantity, new_available, now)

        if not applied:
            # Version conflict - another transaction committed first
            record_inventory_retry("reserve")
            logger.info(
                "reserve_retry",
                ticket_type_id=ticket_type_id,
                attempt=attempt,
                reason="version_conflict",
            )
            continue

        logger.info(
            "inventory_reserved",
            ticket_type_id=ticket_type_id,
            quantity=quantity,
            available=new_available,
            status=new_status,
            attempt=attempt,
        )
        return ReservationResult(ticket_type_id, quantity, new_available, new_status)

    raise InventoryContention(
        "Reservation failed due to high demand. Please try again.",
        ticket_type_id=ticket_type_id,
    )


async def release(
    db: AsyncSession,
    ticket_type_id: int,
    quantity: int,
    *,
    now: datetime,
    max_attempts: int = MAX_RETRY_ATTEMPTS,
) -> ReservationResult:
    """
    Return `quantity` units to a ticket type, capped at total capacity.
    """
    if quantity < 1:
        raise ValueError("quantity must be at least 1")

    for attempt in range(1, max_attempts + 1):
        ticket = await get_ticket_type(db, ticket_type_id)
        if not ticket:
            raise TicketNotSellable(
                f"Ticket type {ticket_type_id} does not exist",
                ticket_type_id=ticket_type_id,
            )

        new_available = min(ticket.available_quantity + quantity, ticket.total_quantity)
        if new_available - ticket.available_quantity < quantity:
            logger.warning(
                "release_capped_at_capacity",
                ticket_type_id=ticket_type_id,
                requested=quantity,
                available=ticket.available_quantity,
                total=ticket.total_quantity,
            )

        applied, new_status = await _apply_delta(db, ticket, quantity, new_available, now)
        if not applied:
            record_inventory_retry("release")
            logger.info(
                "release_retry",
                ticket_type_id=ticket_type_id,
                attempt=attempt,
                reason="version_conflict",
            )
            continue

        logger.info(
            "inventory_released",
            ticket_type_id=ticket_type_id,
            quantity=quantity,
            available=new_available,
            status=new_status,
        )
        return ReservationResult(ticket_type_id, quantity, new_available, new_status)

    raise InventoryContention(
        "Release failed due to concurrent updates. Please try again.",
        ticket_type_id=ticket_type_id,
    )


async def get_availability(db: AsyncSession, ticket_type_id: int, now: datetime) -> dict:
    """
    Display snapshot of a ticket type. Plain dict so it can go straight
    into the availability cache.
    """
    ticket = await get_ticket_type(db, ticket_type_id)
    if not ticket:
        raise TicketTypeNotFound(
            f"Ticket type {ticket_type_id} not found",
            ticket_type_id=ticket_type_id,
        )

    return {
        "ticket_type_id": ticket.id,
        "event_id": ticket.event_id,
        "type": ticket.type,
        "price_cents": ticket.price_cents,
        "currency": ticket.currency,
        "total_quantity": ticket.total_quantity,
        "available_quantity": ticket.available_quantity,
        "status": derive_ticket_status(
            ticket.available_quantity, ticket.sale_end, ticket.status, now
        ),
        "sale_start": ticket.sale_start.isoformat(),
        "sale_end": ticket.sale_end.isoformat(),
        "on_sale": ticket.status != "cancelled" and is_on_sale(ticket, now),
    }
