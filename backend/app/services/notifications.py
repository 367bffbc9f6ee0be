"""
Attendee notifications.

Delivery is fire-and-forget: a failed send is logged and dropped. It never
retries and never rolls back the booking transition that triggered it.
"""

from abc import ABC, abstractmethod

from app.core.logging import get_logger

logger = get_logger(__name__)


class Notifier(ABC):
    @abstractmethod
    async def send_email(self, to: str, subject: str, body: str) -> None:
        pass


class LogNotifier(Notifier):
    """Writes the message to the structured log instead of an SMTP server."""

    async def send_email(self, to: str, subject: str, body: str) -> None:
        logger.info("email_sent", to=to, subject=subject, body_length=len(body))


async def notify(notifier: Notifier, to: str, subject: str, body: str) -> bool:
    """Send and swallow failures. Returns whether the send went through."""
    try:
        await notifier.send_email(to, subject, body)
    except Exception as e:
        logger.warning("notification_failed", to=to, subject=subject, error=str(e))
        return False
    return True
