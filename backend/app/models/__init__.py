from app.models.user import User
from app.models.event import Event
from app.models.ticket import TicketInventory
from app.models.booking import Booking
from app.models.payment import PaymentRecord, PaymentEvent

__all__ = ["User", "Event", "TicketInventory", "Booking", "PaymentRecord", "PaymentEvent"]
