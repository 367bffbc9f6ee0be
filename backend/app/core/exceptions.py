"""
Domain exceptions for the reservation and payment lifecycle.

Services raise these; the API layer renders them through a single
exception handler as {"detail": ..., "code": ...} with the mapped status.
"""

from typing import Any


class ReservationError(Exception):
    """Base exception for all booking/payment domain errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = context
        super().__init__(message)


# Not found

class EventNotFound(ReservationError):
    status_code = 404
    code = "event_not_found"


class BookingNotFound(ReservationError):
    status_code = 404
    code = "booking_not_found"


class TicketTypeNotFound(ReservationError):
    status_code = 404
    code = "ticket_type_not_found"


# Validation

class EventEnded(ReservationError):
    status_code = 400
    code = "event_ended"


class RefundNotAllowed(ReservationError):
    status_code = 400
    code = "refund_not_allowed"


class InvalidQuantity(ReservationError):
    status_code = 400
    code = "invalid_quantity"


class BookingAccessDenied(ReservationError):
    status_code = 403
    code = "booking_access_denied"


# Inventory conflicts

class InsufficientInventory(ReservationError):
    """Raised when fewer units are available than requested."""

    status_code = 409
    code = "insufficient_inventory"


class SaleClosed(ReservationError):
    """Raised when the ticket type is outside its sale window."""

    status_code = 409
    code = "sale_closed"


class TicketNotSellable(ReservationError):
    """Raised when the ticket type is missing, cancelled or belongs to another event."""

    status_code = 409
    code = "ticket_not_sellable"


class InventoryContention(ReservationError):
    """Raised when optimistic retries are exhausted on a hot ticket type."""

    status_code = 409
    code = "inventory_contention"


# Booking lifecycle

class InvalidStateTransition(ReservationError):
    """
    Raised when an illegal booking state transition is attempted.
    """

    status_code = 409
    code = "invalid_state_transition"

    def __init__(self, from_state: str, to_state: str, **context: Any):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Illegal state transition attempted: {from_state} -> {to_state}",
            **context,
        )


class BookingConflict(ReservationError):
    """Raised when another writer changed the booking row first."""

    status_code = 409
    code = "booking_conflict"


# Payment gateway

class GatewayError(ReservationError):
    status_code = 502
    code = "gateway_error"


class GatewayAuthError(GatewayError):
    code = "gateway_auth_error"


class GatewayOrderError(GatewayError):
    code = "gateway_order_error"


# Webhooks

class InvalidWebhookPayload(ReservationError):
    status_code = 400
    code = "invalid_webhook_payload"


class InvalidSignature(ReservationError):
    status_code = 400
    code = "invalid_signature"


class PaymentNotAllowed(ReservationError):
    """Raised when payment is requested for a booking that is not awaiting one."""

    status_code = 409
    code = "payment_not_allowed"
