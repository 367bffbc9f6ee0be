"""
Booking lifecycle rules as plain functions and tables.

Nothing here touches the database. The booking service asks these rules
whether a transition is legal and which fields it implies; it then persists
the result. Keeping them pure makes each rule testable on its own.
"""

import random
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Set

from app.core.exceptions import InvalidStateTransition


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class PaymentState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    EXPIRED = "expired"


class BookingStateMachine:
    """
    Central lifecycle controller for booking transitions.

    cancelled/expired -> pending is the retry path only; it is never taken
    by webhooks or the sweeper.
    """

    _ALLOWED_TRANSITIONS: Dict[BookingStatus, Set[BookingStatus]] = {
        BookingStatus.PENDING: {
            BookingStatus.CONFIRMED,
            BookingStatus.CANCELLED,
            BookingStatus.EXPIRED,
        },
        BookingStatus.CONFIRMED: {
            BookingStatus.REFUNDED,
        },
        BookingStatus.CANCELLED: {
            BookingStatus.PENDING,
        },
        BookingStatus.EXPIRED: {
            BookingStatus.PENDING,
        },
        BookingStatus.REFUNDED: set(),
    }

    @classmethod
    def can_transition(cls, from_status: BookingStatus, to_status: BookingStatus) -> bool:
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)
        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(cls, from_status: BookingStatus, to_status: BookingStatus) -> None:
        """
        Raises InvalidStateTransition if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransition(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status: BookingStatus) -> bool:
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @staticmethod
    def _ensure_valid_status(status: BookingStatus) -> None:
        if not isinstance(status, BookingStatus):
            raise TypeError(f"Expected BookingStatus, got {type(status)}")


# Payment states in which the booking still holds inventory and may be expired
RELEASABLE_PAYMENT_STATES = (PaymentState.PENDING.value, PaymentState.PROCESSING.value)


def is_releasable(status: str, payment_status: str) -> bool:
    """A pending booking whose payment has not completed can give its hold back."""
    return status == BookingStatus.PENDING.value and payment_status in RELEASABLE_PAYMENT_STATES


def can_retry(status: str, payment_status: str) -> bool:
    """
    Retry is allowed from failed/cancelled/expired bookings only. A completed
    payment or a payment still pending on the gateway blocks it.
    """
    if payment_status in (PaymentState.COMPLETED.value, PaymentState.PENDING.value,
                          PaymentState.PROCESSING.value, PaymentState.REFUNDED.value):
        return False
    return status in (BookingStatus.CANCELLED.value, BookingStatus.EXPIRED.value)


def can_cancel(status: str, payment_status: str) -> bool:
    return is_releasable(status, payment_status)


def generate_booking_code(now: datetime, rng: Optional[random.Random] = None) -> str:
    """BK-<last 6 digits of the epoch millis>-<4 random digits>."""
    rng = rng or random.SystemRandom()
    millis = int(now.timestamp() * 1000)
    return f"BK-{millis % 1_000_000:06d}-{rng.randrange(10_000):04d}"


def generate_payment_reference(now: datetime, rng: Optional[random.Random] = None) -> str:
    """PAY-<last 8 digits of the epoch millis>-<4 random digits>."""
    rng = rng or random.SystemRandom()
    millis = int(now.timestamp() * 1000)
    return f"PAY-{millis % 100_000_000:08d}-{rng.randrange(10_000):04d}"
