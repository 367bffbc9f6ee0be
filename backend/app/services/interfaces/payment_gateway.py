"""
Payment gateway interface.
Allows swapping between a real provider and a local, gateway-less setup
without touching the booking state machine.
"""

import hashlib
import hmac
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr, ValidationError

from app.core.exceptions import InvalidWebhookPayload


@dataclass(frozen=True)
class GatewayToken:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class OrderRef:
    order_id: str
    amount_cents: int
    currency: str
    merchant_order_id: Optional[str] = None


@dataclass(frozen=True)
class PaymentToken:
    token: str
    order_id: str
    iframe_url: Optional[str] = None
    integration_id: Optional[int] = None


@dataclass(frozen=True)
class BillingData:
    first_name: str
    last_name: str
    email: str
    phone: str


@dataclass(frozen=True)
class TransactionStatus:
    transaction_id: Optional[str]
    order_id: Optional[str]
    success: bool
    pending: bool
    amount_cents: int
    currency: str
    raw: dict = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class RefundResult:
    transaction_id: Optional[str]
    amount_cents: int
    success: bool
    raw: dict = field(default_factory=dict, compare=False)


class GatewayOrder(BaseModel):
    id: Union[StrictInt, StrictStr]


class GatewayTransaction(BaseModel):
    """Transaction fields the booking lifecycle acts on; anything else stays in `raw`."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[Union[StrictInt, StrictStr]] = None
    success: StrictBool
    pending: StrictBool = False
    amount_cents: StrictInt = Field(ge=0)
    currency: Optional[StrictStr] = None
    # An order object or a bare order id
    order: Optional[Union[GatewayOrder, StrictInt, StrictStr]] = None

    @property
    def order_id(self) -> Optional[str]:
        order = self.order.id if isinstance(self.order, GatewayOrder) else self.order
        return None if order is None else str(order)


def order_id_of(transaction: dict) -> Optional[str]:
    """Gateway order id of a transaction; `order` is either an object or a bare id."""
    order = transaction.get("order")
    if isinstance(order, dict):
        order = order.get("id")
    return None if order is None else str(order)


def parse_transaction(data: dict) -> TransactionStatus:
    """
    Gateway transaction object (webhook body or inquiry response) as a
    TransactionStatus.

    Raises:
        InvalidWebhookPayload: a field is missing or has the wrong JSON type,
            e.g. "success": "false"
    """
    try:
        fields = GatewayTransaction.model_validate(data)
    except ValidationError as e:
        raise InvalidWebhookPayload(
            "Gateway transaction has malformed fields",
            fields=sorted({".".join(str(part) for part in error["loc"]) for error in e.errors()}),
        ) from e
    return TransactionStatus(
        transaction_id=None if fields.id is None else str(fields.id),
        order_id=fields.order_id,
        success=fields.success,
        pending=fields.pending,
        amount_cents=fields.amount_cents,
        currency=fields.currency or "",
        raw=data,
    )


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def compute_webhook_hmac(transaction: dict, secret: str) -> str:
    """
    HMAC-SHA512 (hex) over, in this order:
    amount_cents, currency, success, order.id, created_at, id
    """
    message = "".join(
        _render(value)
        for value in (
            transaction.get("amount_cents"),
            transaction.get("currency"),
            transaction.get("success"),
            order_id_of(transaction),
            transaction.get("created_at"),
            transaction.get("id"),
        )
    )
    return hmac.new(secret.encode(), message.encode(), hashlib.sha512).hexdigest()


class PaymentGateway(ABC):
    """
    Interface for payment providers.

    Implementations:
    - PaymobGateway: Paymob accept API over HTTP
    - OfflineGateway: local order ids, nothing leaves the process
    """

    name: str = "abstract"

    def __init__(self, hmac_secret: str):
        self.hmac_secret = hmac_secret

    @abstractmethod
    async def authenticate(self) -> GatewayToken:
        pass

    @abstractmethod
    async def create_order(
        self,
        amount_cents: int,
        currency: str,
        items: list[dict],
        merchant_order_id: Optional[str] = None,
    ) -> OrderRef:
        pass

    @abstractmethod
    async def create_payment_key(
        self,
        order: OrderRef,
        billing: BillingData,
        amount_cents: int,
        payment_method: str = "card",
    ) -> PaymentToken:
        pass

    @abstractmethod
    async def inquire_transaction(self, order_id: str) -> Optional[TransactionStatus]:
        """
        Latest transaction for a gateway order.

        Returns:
            None if the gateway knows no transaction for the order yet
        """
        pass

    @abstractmethod
    async def refund(self, transaction_id: str, amount_cents: int) -> RefundResult:
        pass

    def verify_webhook_signature(self, transaction: dict, signature: Optional[str]) -> bool:
        if not signature or not self.hmac_secret:
            return False
        expected = compute_webhook_hmac(transaction, self.hmac_secret)
        return hmac.compare_digest(expected, signature.strip().lower())

    async def initiate_payment(
        self,
        amount_cents: int,
        currency: str,
        items: list[dict],
        billing: BillingData,
        payment_method: str = "card",
        merchant_order_id: Optional[str] = None,
    ) -> PaymentToken:
        """Create an order and the payment key the client pays with."""
        order = await self.create_order(amount_cents, currency, items, merchant_order_id)
        return await self.create_payment_key(order, billing, amount_cents, payment_method)
