"""Payments Service models package."""

from services.payments_service.models.core import (
    BreezWallet,
    Conversion,
    PaymentIntent,
    PlaidAccount,
    User,
    WalletTransaction,
    WebhookEvent,
)
from services.payments_service.models.enums import (
    ConversionStatus,
    LedgerCurrency,
    PaymentIntentStatus,
    PlaidAccountStatus,
    SourceType,
    SwapDirection,
    TransactionStatus,
    TransactionType,
    WalletStatus,
    WalletType,
    WebhookProvider,
)

__all__ = [
    "BreezWallet",
    "Conversion",
    "ConversionStatus",
    "LedgerCurrency",
    "PaymentIntent",
    "PaymentIntentStatus",
    "PlaidAccount",
    "PlaidAccountStatus",
    "SourceType",
    "SwapDirection",
    "TransactionStatus",
    "TransactionType",
    "User",
    "WalletStatus",
    "WalletTransaction",
    "WalletType",
    "WebhookEvent",
    "WebhookProvider",
]
