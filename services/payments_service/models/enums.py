"""Enum definitions for payments service models."""

import enum


def enum_values(enum_cls):
    """Return persistent DB values for SAEnum mappings."""
    return [member.value for member in enum_cls]


class PaymentIntentStatus(str, enum.Enum):
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_INTENT_STATUSES


TERMINAL_INTENT_STATUSES = frozenset(
    {
        PaymentIntentStatus.SUCCEEDED,
        PaymentIntentStatus.FAILED,
        PaymentIntentStatus.CANCELED,
    }
)


class ConversionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class WalletType(str, enum.Enum):
    COMPANY = "company"
    EMPLOYEE = "employee"


class WalletStatus(str, enum.Enum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    ERROR = "error"


class TransactionType(str, enum.Enum):
    FUNDING = "funding"
    PAYOUT = "payout"
    SWAP_BTC_TO_USD = "swap_btc_to_usd"
    SWAP_USD_TO_BTC = "swap_usd_to_btc"


class SourceType(str, enum.Enum):
    STRIPE = "stripe"
    STRIKE = "strike"
    BREEZ = "breez"
    PLAID = "plaid"


class LedgerCurrency(str, enum.Enum):
    USD = "usd"
    SATS = "sats"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    AWAITING_PAYMENT = "awaiting_payment"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TransactionStatus.COMPLETED, TransactionStatus.FAILED)


class SwapDirection(str, enum.Enum):
    BTC_TO_USD = "btc_to_usd"
    USD_TO_BTC = "usd_to_btc"


class WebhookProvider(str, enum.Enum):
    STRIPE = "stripe"
    STRIKE = "strike"
    BREEZ = "breez"
    PLAID = "plaid"


class PlaidAccountStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"
