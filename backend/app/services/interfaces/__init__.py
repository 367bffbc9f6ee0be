"""
Service interfaces for dependency inversion.
Allows swapping implementations without changing business logic.
"""

from .payment_gateway import (
    BillingData,
    GatewayToken,
    OrderRef,
    PaymentGateway,
    PaymentToken,
    RefundResult,
    TransactionStatus,
    compute_webhook_hmac,
)
from .offline_gateway import OfflineGateway

__all__ = [
    'BillingData',
    'GatewayToken',
    'OrderRef',
    'PaymentGateway',
    'PaymentToken',
    'RefundResult',
    'TransactionStatus',
    'compute_webhook_hmac',
    'OfflineGateway',
]
