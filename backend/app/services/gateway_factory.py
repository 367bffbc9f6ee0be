"""
Payment gateway factory.
Configures which payment gateway implementation to use.
"""

import httpx

from app.core.clock import Clock, utcnow
from app.core.config import Settings
from app.services.interfaces.offline_gateway import OfflineGateway
from app.services.interfaces.payment_gateway import PaymentGateway
from app.services.paymob_gateway import PaymobGateway


def build_payment_gateway(
    settings: Settings,
    http_client: httpx.AsyncClient,
    clock: Clock = utcnow,
) -> PaymentGateway:
    """
    Gateway selection based on PAYMENT_GATEWAY:
    - paymob: Paymob accept API (production)
    - offline: local order ids, settlement by signed webhook only
    """
    choice = settings.PAYMENT_GATEWAY.lower()

    if choice == "paymob":
        return PaymobGateway.from_settings(settings, http_client, clock=clock)
    if choice == "offline":
        return OfflineGateway(settings.PAYMOB_HMAC_SECRET, clock=clock)

    raise ValueError(f"Unknown PAYMENT_GATEWAY: {settings.PAYMENT_GATEWAY!r}")
