from app.schemas.booking import (
    AttendeeIn,
    BookingCreate,
    BookingCreatedResponse,
    BookingListResponse,
    BookingResponse,
    PaymentInfo,
    RefundRequest,
)
from app.schemas.payment import (
    PaymentRecordResponse,
    PaymentStatusResponse,
    PaymentVerifyResponse,
    RefundResponse,
    WebhookResponse,
)
from app.schemas.ticket import TicketAvailabilityResponse, TicketVerifyResponse

__all__ = [
    "AttendeeIn", "BookingCreate", "BookingCreatedResponse", "BookingListResponse",
    "BookingResponse", "PaymentInfo", "RefundRequest",
    "PaymentRecordResponse", "PaymentStatusResponse", "PaymentVerifyResponse",
    "RefundResponse", "WebhookResponse",
    "TicketAvailabilityResponse", "TicketVerifyResponse",
]
