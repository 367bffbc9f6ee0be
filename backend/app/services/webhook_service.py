"""
Payment webhook reconciliation.

The gateway calls us back asynchronously, possibly more than once and in any
order. Handling is idempotent through the booking's current-state guards,
not through payload dedupe:

  - a repeated success finds the booking confirmed and does nothing
  - a failure after a success never reverts the confirmation
  - a success after the hold was released does not resurrect the booking;
    it is recorded on the payment for a manual refund

The signature is checked before the body is acted on in any way, so a forged or
tampered request cannot change a single row.
"""

import json
from dataclasses import dataclass
from typing import Optional

from app.core.exceptions import BookingNotFound, InvalidSignature, InvalidWebhookPayload
from app.core.logging import get_logger
from app.core.metrics import record_webhook
from app.services.booking_service import BookingService
from app.services.booking_state import BookingStatus, PaymentState
from app.services.interfaces.payment_gateway import order_id_of, parse_transaction

logger = get_logger(__name__)

TRANSACTION_TYPE = "TRANSACTION"


@dataclass(frozen=True)
class WebhookResult:
    outcome: str
    order_id: Optional[str] = None
    booking_code: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None


def extract_transaction(raw_body: bytes) -> tuple[Optional[str], dict]:
    """
    Returns (callback type, transaction object). Accepts both a bare
    transaction and the {"type": ..., "obj": {...}} envelope.
    """
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidWebhookPayload("Webhook body is not valid JSON") from e

    if not isinstance(payload, dict):
        raise InvalidWebhookPayload("Webhook body must be a JSON object")

    if "obj" in payload:
        transaction = payload["obj"]
        if not isinstance(transaction, dict):
            raise InvalidWebhookPayload("Webhook 'obj' must be a JSON object")
        return payload.get("type"), transaction

    return payload.get("type"), payload


class WebhookReconciler:
    def __init__(self, service: BookingService):
        self.service = service
        self.gateway = service.gateway

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> WebhookResult:
        try:
            callback_type, transaction = extract_transaction(raw_body)
        except InvalidWebhookPayload:
            record_webhook("invalid_payload")
            logger.warning("webhook_payload_invalid", body_length=len(raw_body))
            raise

        # Checked before any branch, ignored callback types included
        if not self.gateway.verify_webhook_signature(transaction, signature):
            record_webhook("invalid_signature")
            logger.warning(
                "webhook_signature_invalid",
                security_event=True,
                callback_type=callback_type,
                order_id=order_id_of(transaction),
                transaction_id=transaction.get("id"),
                signature_present=bool(signature),
            )
            raise InvalidSignature("Webhook signature verification failed", order_id=order_id_of(transaction))

        if callback_type is not None and str(callback_type).upper() != TRANSACTION_TYPE:
            record_webhook("ignored")
            logger.info("webhook_ignored_type", callback_type=callback_type)
            return WebhookResult(outcome="ignored")

        order_id = order_id_of(transaction)
        if order_id is None:
            record_webhook("invalid_payload")
            raise InvalidWebhookPayload("Webhook transaction carries no order id")

        try:
            tx = parse_transaction(transaction)
        except InvalidWebhookPayload as e:
            record_webhook("invalid_payload")
            logger.warning("webhook_transaction_malformed", order_id=order_id, fields=e.context.get("fields"))
            raise

        booking = await self.service.get_by_order_id(order_id)
        if booking is None:
            record_webhook("not_found")
            logger.warning("webhook_booking_not_found", order_id=order_id, transaction_id=tx.transaction_id)
            raise BookingNotFound(f"No booking for gateway order {order_id}", order_id=order_id)

        before = (booking.status, booking.payment_status)
        await self.service.apply_transaction(booking, tx, source="webhook")
        after = (booking.status, booking.payment_status)

        outcome = self._outcome(before, after, tx.success)
        record_webhook(outcome)
        logger.info(
            "webhook_processed",
            outcome=outcome,
            order_id=order_id,
            booking_code=booking.booking_code,
            transaction_id=tx.transaction_id,
            success=tx.success,
            pending=tx.pending,
        )
        return WebhookResult(
            outcome=outcome,
            order_id=order_id,
            booking_code=booking.booking_code,
            status=booking.status,
            payment_status=booking.payment_status,
        )

    @staticmethod
    def _outcome(before: tuple[str, str], after: tuple[str, str], success: bool) -> str:
        released = (BookingStatus.CANCELLED.value, BookingStatus.EXPIRED.value)
        if success and before[0] in released:
            return "capture_after_release"
        if before == after:
            return "ignored"
        if after[0] == BookingStatus.CONFIRMED.value:
            return "confirmed"
        if after[1] == PaymentState.PROCESSING.value:
            return "processing"
        return "failed"
