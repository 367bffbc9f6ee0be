"""
Paymob accept API client.

FLOW
====

  1. POST /auth/tokens                 {api_key}            -> auth token
  2. POST /ecommerce/orders            {auth_token, ...}    -> order id
  3. POST /acceptance/payment_keys     {auth_token, ...}    -> payment token
  4. Client pays inside the iframe: /acceptance/iframes/{iframe_id}?payment_token=...
  5. Paymob POSTs the transaction to our webhook, HMAC-signed

The auth token is cached until PAYMOB_TOKEN_TTL_SECONDS after it was issued
(Paymob tokens live one hour). The httpx client is owned by the application
lifespan and shared; this class never opens or closes it.

Every call is counted in payment_gateway_requests_total{operation, result}.
"""

from datetime import timedelta
from typing import Optional, Type

import httpx

from app.core.clock import Clock, utcnow
from app.core.config import Settings
from app.core.exceptions import GatewayAuthError, GatewayError, GatewayOrderError, InvalidWebhookPayload
from app.core.logging import get_logger
from app.core.metrics import record_gateway_call
from app.services.interfaces.payment_gateway import (
    BillingData,
    GatewayToken,
    OrderRef,
    PaymentGateway,
    PaymentToken,
    RefundResult,
    TransactionStatus,
    parse_transaction,
)

logger = get_logger(__name__)


class PaymobGateway(PaymentGateway):
    name = "paymob"

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        api_url: str,
        api_key: str,
        hmac_secret: str,
        card_integration_id: int,
        wallet_integration_id: int,
        iframe_id: str,
        token_ttl_seconds: int = 3000,
        payment_key_expiration: int = 3600,
        timeout: float = 15.0,
        clock: Clock = utcnow,
    ):
        super().__init__(hmac_secret)
        self.http = http
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.card_integration_id = card_integration_id
        self.wallet_integration_id = wallet_integration_id
        self.iframe_id = iframe_id
        self.token_ttl = timedelta(seconds=token_ttl_seconds)
        self.payment_key_expiration = payment_key_expiration
        self.timeout = timeout
        self.clock = clock
        self._token: Optional[GatewayToken] = None

    @classmethod
    def from_settings(
        cls, settings: Settings, http: httpx.AsyncClient, clock: Clock = utcnow
    ) -> "PaymobGateway":
        return cls(
            http,
            api_url=settings.PAYMOB_API_URL,
            api_key=settings.PAYMOB_API_KEY,
            hmac_secret=settings.PAYMOB_HMAC_SECRET,
            card_integration_id=settings.PAYMOB_CARD_INTEGRATION_ID,
            wallet_integration_id=settings.PAYMOB_WALLET_INTEGRATION_ID,
            iframe_id=settings.PAYMOB_IFRAME_ID,
            token_ttl_seconds=settings.PAYMOB_TOKEN_TTL_SECONDS,
            payment_key_expiration=settings.PAYMENT_KEY_EXPIRATION_SECONDS,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            clock=clock,
        )

    async def _post(
        self,
        operation: str,
        path: str,
        body: dict,
        error_cls: Type[GatewayError] = GatewayError,
        allow_not_found: bool = False,
    ) -> Optional[dict]:
        url = f"{self.api_url}{path}"
        try:
            response = await self.http.post(url, json=body, timeout=self.timeout)
        except httpx.HTTPError as e:
            record_gateway_call(operation, ok=False)
            logger.error("gateway_unreachable", operation=operation, error=str(e))
            raise error_cls(f"Payment gateway unreachable during {operation}", operation=operation) from e

        if allow_not_found and response.status_code == 404:
            record_gateway_call(operation, ok=True)
            return None

        if response.is_error:
            record_gateway_call(operation, ok=False)
            logger.error(
                "gateway_request_rejected",
                operation=operation,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise error_cls(
                f"Payment gateway rejected {operation} ({response.status_code})",
                operation=operation,
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            record_gateway_call(operation, ok=False)
            logger.error("gateway_invalid_response", operation=operation, body=response.text[:500])
            raise error_cls(f"Payment gateway sent an unreadable {operation} response") from e

        record_gateway_call(operation, ok=True)
        return data

    async def authenticate(self) -> GatewayToken:
        now = self.clock()
        if self._token is not None and now < self._token.expires_at:
            return self._token

        data = await self._post("auth", "/auth/tokens", {"api_key": self.api_key}, GatewayAuthError)
        token = data.get("token")
        if not token:
            record_gateway_call("auth", ok=False)
            raise GatewayAuthError("Payment gateway returned no auth token")

        self._token = GatewayToken(token=token, expires_at=now + self.token_ttl)
        logger.info("gateway_authenticated", gateway=self.name, expires_at=self._token.expires_at.isoformat())
        return self._token

    async def create_order(
        self,
        amount_cents: int,
        currency: str,
        items: list[dict],
        merchant_order_id: Optional[str] = None,
    ) -> OrderRef:
        token = await self.authenticate()
        body = {
            "auth_token": token.token,
            "delivery_needed": False,
            "amount_cents": str(amount_cents),
            "currency": currency,
            "items": items,
        }
        if merchant_order_id:
            body["merchant_order_id"] = merchant_order_id

        data = await self._post("order", "/ecommerce/orders", body, GatewayOrderError)
        if data.get("id") is None:
            raise GatewayOrderError("Payment gateway returned no order id")

        order = OrderRef(
            order_id=str(data["id"]),
            amount_cents=amount_cents,
            currency=currency,
            merchant_order_id=merchant_order_id,
        )
        logger.info("gateway_order_created", order_id=order.order_id, amount_cents=amount_cents)
        return order

    def integration_id_for(self, payment_method: str) -> int:
        if payment_method == "wallet":
            return self.wallet_integration_id
        return self.card_integration_id

    async def create_payment_key(
        self,
        order: OrderRef,
        billing: BillingData,
        amount_cents: int,
        payment_method: str = "card",
    ) -> PaymentToken:
        token = await self.authenticate()
        integration_id = self.integration_id_for(payment_method)
        body = {
            "auth_token": token.token,
            "amount_cents": str(amount_cents),
            "expiration": self.payment_key_expiration,
            "order_id": order.order_id,
            "billing_data": {
                "apartment": "NA",
                "email": billing.email,
                "floor": "NA",
                "first_name": billing.first_name,
                "street": "NA",
                "building": "NA",
                "phone_number": billing.phone,
                "shipping_method": "NA",
                "postal_code": "NA",
                "city": "Cairo",
                "country": "EG",
                "last_name": billing.last_name,
                "state": "Cairo",
            },
            "currency": order.currency,
            "integration_id": integration_id,
        }

        data = await self._post("payment_key", "/acceptance/payment_keys", body, GatewayOrderError)
        payment_token = data.get("token")
        if not payment_token:
            raise GatewayOrderError("Payment gateway returned no payment key")

        return PaymentToken(
            token=payment_token,
            order_id=order.order_id,
            iframe_url=f"{self.api_url}/acceptance/iframes/{self.iframe_id}?payment_token={payment_token}",
            integration_id=integration_id,
        )

    async def inquire_transaction(self, order_id: str) -> Optional[TransactionStatus]:
        token = await self.authenticate()
        data = await self._post(
            "inquiry",
            "/ecommerce/orders/transaction_inquiry",
            {"auth_token": token.token, "order_id": order_id},
            allow_not_found=True,
        )
        if not data or data.get("id") is None:
            return None
        try:
            return parse_transaction(data)
        except InvalidWebhookPayload as e:
            logger.error("paymob_inquiry_malformed", order_id=order_id, fields=e.context.get("fields"))
            raise GatewayOrderError(f"Unreadable transaction inquiry for order {order_id}", order_id=order_id) from e

    async def refund(self, transaction_id: str, amount_cents: int) -> RefundResult:
        token = await self.authenticate()
        data = await self._post(
            "refund",
            "/acceptance/void_refund/refund",
            {
                "auth_token": token.token,
                "transaction_id": transaction_id,
                "amount_cents": str(amount_cents),
            },
        )
        logger.info("gateway_refund_requested", transaction_id=transaction_id, amount_cents=amount_cents)
        return RefundResult(
            transaction_id=None if data.get("id") is None else str(data["id"]),
            amount_cents=amount_cents,
            success=data.get("success") is True,
            raw=data,
        )
