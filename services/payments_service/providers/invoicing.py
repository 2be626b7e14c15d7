"""
Bitcoin invoicing backends (BTCPay Server, LNbits).

Both implement ``PaymentService`` so the invoicing module never needs to
know which backend is configured; ``create_payment_service`` picks one from
settings.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import httpx
from libs.common.config import Settings
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.payments_service.providers.base import ProviderClient

logger = get_logger(__name__)

PAID = "paid"
PENDING = "pending"
EXPIRED = "expired"
INVALID = "invalid"


@dataclass
class CreatePaymentRequest:
    amount: Decimal  # USD
    description: str
    currency: str = "USD"
    order_id: Optional[str] = None
    customer_email: Optional[str] = None
    redirect_url: Optional[str] = None
    webhook_url: Optional[str] = None


@dataclass
class PaymentInvoice:
    """Provider-agnostic Bitcoin invoice."""

    id: str
    amount: Decimal
    currency: str
    status: str  # pending, paid, expired, invalid
    payment_url: str
    expires_at: datetime
    created_at: datetime
    btc_amount: Optional[Decimal] = None
    paid_at: Optional[datetime] = None


def _from_timestamp(value: Optional[int], default: datetime) -> datetime:
    if not value:
        return default
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class PaymentService(ABC):
    """Capability interface shared by the invoicing backends."""

    @abstractmethod
    async def create_invoice(self, request: CreatePaymentRequest) -> PaymentInvoice: ...

    @abstractmethod
    async def get_invoice_status(self, invoice_id: str) -> PaymentInvoice: ...

    async def get_invoice(self, invoice_id: str) -> PaymentInvoice:
        return await self.get_invoice_status(invoice_id)

    @abstractmethod
    async def mark_invoice_invalid(self, invoice_id: str) -> None: ...

    def is_invoice_paid(self, invoice: PaymentInvoice) -> bool:
        return invoice.status == PAID

    def is_invoice_expired(self, invoice: PaymentInvoice) -> bool:
        return invoice.status == EXPIRED

    def is_invoice_pending(self, invoice: PaymentInvoice) -> bool:
        return invoice.status == PENDING

    def get_payment_url(self, invoice: PaymentInvoice) -> str:
        return invoice.payment_url


class BTCPayPaymentService(ProviderClient, PaymentService):
    """BTCPay Server Greenfield API."""

    provider = "btcpay"

    STATUS_MAP = {
        "New": PENDING,
        "Processing": PENDING,
        "Settled": PAID,
        "Complete": PAID,
        "Expired": EXPIRED,
        "Invalid": INVALID,
    }

    def __init__(
        self,
        url: str,
        api_key: str,
        store_id: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            url,
            {"Authorization": f"token {api_key}", "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )
        self.store_id = store_id

    def _invoice_path(self, invoice_id: str = "") -> str:
        path = f"/api/v1/stores/{self.store_id}/invoices"
        return f"{path}/{invoice_id}" if invoice_id else path

    async def create_invoice(self, request: CreatePaymentRequest) -> PaymentInvoice:
        data = await self._request(
            "POST",
            self._invoice_path(),
            json_data={
                "amount": str(request.amount),
                "currency": request.currency,
                "metadata": {
                    "orderId": request.order_id,
                    "buyerEmail": request.customer_email,
                    "itemDesc": request.description,
                },
                "checkout": {
                    "redirectURL": request.redirect_url,
                    "expirationMinutes": 60,
                },
            },
        )
        return self._to_invoice(data)

    async def get_invoice_status(self, invoice_id: str) -> PaymentInvoice:
        data = await self._request("GET", self._invoice_path(invoice_id))
        return self._to_invoice(data)

    async def mark_invoice_invalid(self, invoice_id: str) -> None:
        await self._request(
            "POST",
            f"{self._invoice_path(invoice_id)}/status",
            json_data={"status": "Invalid"},
        )
        logger.info("Marked BTCPay invoice %s invalid", invoice_id)

    def _to_invoice(self, data: dict) -> PaymentInvoice:
        now = utc_now()
        status = self.STATUS_MAP.get(data.get("status"), PENDING)
        return PaymentInvoice(
            id=data["id"],
            amount=Decimal(str(data.get("amount", "0"))),
            currency=data.get("currency", "USD"),
            status=status,
            payment_url=data.get("checkoutLink", ""),
            expires_at=_from_timestamp(data.get("expirationTime"), now + timedelta(hours=1)),
            created_at=_from_timestamp(data.get("createdTime"), now),
            paid_at=now if status == PAID else None,
        )


class LNbitsPaymentService(ProviderClient, PaymentService):
    """LNbits wallet API (fiat-denominated incoming invoices)."""

    provider = "lnbits"

    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            url,
            {"X-Api-Key": api_key, "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def create_invoice(self, request: CreatePaymentRequest) -> PaymentInvoice:
        data = await self._request(
            "POST",
            "/api/v1/payments",
            json_data={
                "out": False,
                "amount": float(request.amount),
                "unit": request.currency,
                "memo": request.description,
                "webhook": request.webhook_url,
                "expiry": 3600,
            },
        )
        now = utc_now()
        return PaymentInvoice(
            id=data["payment_hash"],
            amount=request.amount,
            currency=request.currency,
            status=PENDING,
            payment_url=data["payment_request"],
            expires_at=now + timedelta(hours=1),
            created_at=now,
        )

    async def get_invoice_status(self, invoice_id: str) -> PaymentInvoice:
        data = await self._request("GET", f"/api/v1/payments/{invoice_id}")
        details = data.get("details") or {}
        now = utc_now()
        created_at = _from_timestamp(details.get("time"), now)
        expires_at = _from_timestamp(details.get("expiry"), created_at + timedelta(hours=1))

        if data.get("paid"):
            status = PAID
        elif expires_at <= now:
            status = EXPIRED
        else:
            status = PENDING

        extra = details.get("extra") or {}
        return PaymentInvoice(
            id=invoice_id,
            amount=Decimal(str(extra.get("fiat_amount", "0"))),
            currency=extra.get("fiat_currency", "USD"),
            status=status,
            payment_url=details.get("bolt11", ""),
            expires_at=expires_at,
            created_at=created_at,
            btc_amount=Decimal(int(details.get("amount", 0))) / Decimal(100_000_000_000),
            paid_at=now if status == PAID else None,
        )

    async def mark_invoice_invalid(self, invoice_id: str) -> None:
        # LNbits has no invalidation; an unpaid invoice simply expires.
        logger.info("LNbits invoice %s left to expire", invoice_id)


def create_payment_service(settings: Settings, **kwargs) -> PaymentService:
    """Build the invoicing backend named by ``INVOICE_PROVIDER``."""
    if settings.INVOICE_PROVIDER == "lnbits":
        return LNbitsPaymentService(
            settings.LNBITS_URL,
            settings.LNBITS_API_KEY,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
            **kwargs,
        )
    return BTCPayPaymentService(
        settings.BTCPAY_URL,
        settings.BTCPAY_API_KEY,
        settings.BTCPAY_STORE_ID,
        timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        **kwargs,
    )
