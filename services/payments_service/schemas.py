import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from services.payments_service.models import (
    ConversionStatus,
    LedgerCurrency,
    PlaidAccountStatus,
    SourceType,
    SwapDirection,
    TransactionStatus,
    TransactionType,
    WalletType,
    WebhookProvider,
)

# ---------------------------------------------------------------------------
# Plaid
# ---------------------------------------------------------------------------


class LinkTokenResponse(BaseModel):
    link_token: str


class ExchangeTokenRequest(BaseModel):
    public_token: str = Field(..., min_length=1)


class PlaidAccountResponse(BaseModel):
    id: uuid.UUID
    account_id: str
    account_name: str
    account_type: str
    account_subtype: Optional[str] = None
    mask: Optional[str] = None
    institution_name: Optional[str] = None
    status: PlaidAccountStatus
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Money movement
# ---------------------------------------------------------------------------


class FundWalletRequest(BaseModel):
    amount_usd: Decimal = Field(..., gt=0, decimal_places=2)
    plaid_account_id: uuid.UUID
    description: str = Field(default="Company wallet funding", min_length=1)


class FundWalletResponse(BaseModel):
    payment_intent_id: str
    status: str


class PaymentStatusResponse(BaseModel):
    payment_intent_id: str
    status: str
    details: dict


class SwapRequest(BaseModel):
    direction: SwapDirection
    amount: Decimal = Field(..., gt=0)  # sats for btc_to_usd, USD for usd_to_btc
    description: str = ""


class SwapResponse(BaseModel):
    status: str
    transaction_id: str


class PayoutRequest(BaseModel):
    amount_sats: int = Field(..., gt=0, strict=True)
    description: str = Field(..., min_length=1, max_length=255)
    wallet_id: Optional[uuid.UUID] = None


class PayoutResponse(BaseModel):
    status: str
    invoice_id: Optional[str] = None


class WalletBalanceResponse(BaseModel):
    wallet_type: WalletType
    balance_sats: int


class TransactionResponse(BaseModel):
    id: uuid.UUID
    wallet_id: Optional[uuid.UUID] = None
    transaction_type: TransactionType
    source_type: SourceType
    source_id: str
    lightning_invoice_id: Optional[str] = None
    amount: Decimal
    currency: LedgerCurrency
    status: TransactionStatus
    error: Optional[str] = None
    metadata: Optional[dict] = Field(default=None, validation_alias="transaction_metadata")
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class WebhookEventResponse(BaseModel):
    id: uuid.UUID
    provider: WebhookProvider
    event_type: str
    event_id: str
    processed: bool
    processed_at: Optional[datetime] = None
    error: Optional[str] = None
    attempts: int
    received_at: datetime

    model_config = ConfigDict(from_attributes=True)


class WebhookEventListResponse(BaseModel):
    events: list[WebhookEventResponse]
    total: int
    has_more: bool


class PaymentHealthResponse(BaseModel):
    window_hours: int
    transactions: dict[str, int]
    webhooks: dict[str, int]
    queue_available: bool


class ConversionStatsResponse(BaseModel):
    total: int
    by_status: dict[ConversionStatus, int]
    total_usd: Decimal
    total_btc: Decimal
    average_rate: Optional[Decimal] = None


class RetryResponse(BaseModel):
    payment_intent_id: str
    job_id: Optional[str] = None
    queued: bool


class CancelResponse(BaseModel):
    payment_intent_id: str
    status: str


class RefundRequest(BaseModel):
    amount_usd: Optional[Decimal] = Field(default=None, gt=0, decimal_places=2)


class RefundResponse(BaseModel):
    payment_intent_id: str
    refund_id: str
    status: str
    amount_usd: Decimal
