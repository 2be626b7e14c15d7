"""Provider adapters for the payments service."""

from services.payments_service.providers.breez import BreezAdapter
from services.payments_service.providers.invoicing import (
    BTCPayPaymentService,
    LNbitsPaymentService,
    PaymentService,
    create_payment_service,
)
from services.payments_service.providers.plaid import PlaidAdapter
from services.payments_service.providers.strike import StrikeAdapter
from services.payments_service.providers.stripe import StripeAdapter

__all__ = [
    "BTCPayPaymentService",
    "BreezAdapter",
    "LNbitsPaymentService",
    "PaymentService",
    "PlaidAdapter",
    "StrikeAdapter",
    "StripeAdapter",
    "create_payment_service",
]
