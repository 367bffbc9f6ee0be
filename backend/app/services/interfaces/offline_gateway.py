"""
Offline payment gateway.

Strategy: No provider at all. Orders get local ids, payment keys are random
tokens, and settlement arrives through the same signed webhook path a real
provider would use. Good for development and tests; the booking lifecycle is
identical to the one running against Paymob.
"""

import secrets
import uuid
from datetime import timedelta
from typing import Optional

from app.core.clock import Clock, utcnow
from app.core.logging import get_logger
from app.services.interfaces.payment_gateway import (
    BillingData,
    GatewayToken,
    OrderRef,
    PaymentGateway,
    PaymentToken,
    RefundResult,
    TransactionStatus,
)

logger = get_logger(__name__)


class OfflineGateway(PaymentGateway):
    name = "offline"

    def __init__(self, hmac_secret: str, clock: Clock = utcnow):
        super().__init__(hmac_secret)
        self.clock = clock

    async def authenticate(self) -> GatewayToken:
        return GatewayToken(token="offline", expires_at=self.clock() + timedelta(days=1))

    async def create_order(
        self,
        amount_cents: int,
        currency: str,
        items: list[dict],
        merchant_order_id: Optional[str] = None,
    ) -> OrderRef:
        order_id = f"offline-{uuid.uuid4().hex}"
        logger.info("offline_order_created", order_id=order_id, amount_cents=amount_cents)
        return OrderRef(
            order_id=order_id,
            amount_cents=amount_cents,
            currency=currency,
            merchant_order_id=merchant_order_id,
        )

    async def create_payment_key(
        self,
        order: OrderRef,
        billing: BillingData,
        amount_cents: int,
        payment_method: str = "card",
    ) -> PaymentToken:
        return PaymentToken(token=secrets.token_urlsafe(24), order_id=order.order_id)

    async def inquire_transaction(self, order_id: str) -> Optional[TransactionStatus]:
        # Nothing to ask; the webhook is the only source of truth
        return None

    async def refund(self, transaction_id: str, amount_cents: int) -> RefundResult:
        logger.info("offline_refund", transaction_id=transaction_id, amount_cents=amount_cents)
        return RefundResult(transaction_id=transaction_id, amount_cents=amount_cents, success=True)
