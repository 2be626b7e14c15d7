"""
Strike adapter: USD/BTC quotes, Lightning payments and swaps.

Every call goes through ``ProviderClient._request`` with exponential
backoff: conversion correctness depends on eventual success, not latency.
An expired quote is terminal and is never retried here.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

import httpx
from libs.common.config import Settings
from libs.common.datetime_utils import ensure_utc, utc_now
from libs.common.logging import get_logger
from services.payments_service.errors import ProviderError, QuoteExpiredError
from services.payments_service.providers.base import ProviderClient

logger = get_logger(__name__)

EXPIRED_QUOTE_CODES = frozenset({"QUOTE_EXPIRED", "quote_expired"})


@dataclass
class QuoteFees:
    network_fee: Decimal = Decimal("0")
    service_fee: Decimal = Decimal("0")
    total_fee: Decimal = Decimal("0")


@dataclass
class Quote:
    """A rate-locked USD/BTC offer. ``exchange_rate`` is USD per BTC."""

    quote_id: str
    amount_usd: Decimal
    amount_btc: Decimal
    exchange_rate: Decimal
    expires_at: Optional[datetime]
    status: str
    fees: QuoteFees

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and ensure_utc(self.expires_at) <= utc_now()

    @classmethod
    def from_response(cls, data: dict) -> "Quote":
        fees = data.get("fees") or {}
        expires_at = data.get("expiresAt")
        return cls(
            quote_id=data["quoteId"],
            amount_usd=Decimal(str(data["amountUsd"])),
            amount_btc=Decimal(str(data["amountBtc"])),
            exchange_rate=Decimal(str(data["exchangeRate"])),
            expires_at=datetime.fromisoformat(expires_at.replace("Z", "+00:00"))
            if expires_at
            else None,
            status=data.get("status", "pending"),
            fees=QuoteFees(
                network_fee=Decimal(str(fees.get("networkFee", 0))),
                service_fee=Decimal(str(fees.get("serviceFee", 0))),
                total_fee=Decimal(str(fees.get("totalFee", 0))),
            ),
        )


@dataclass
class StrikeInvoice:
    invoice_id: str
    bolt11: str
    amount_btc: Decimal
    status: str


@dataclass
class StrikePayment:
    payment_id: str
    status: str  # pending, completed, failed
    transaction_hash: Optional[str] = None


@dataclass
class Swap:
    swap_id: str
    amount_btc: Decimal
    amount_usd: Decimal
    exchange_rate: Decimal
    status: str  # pending, completed, failed


class StrikeAdapter(ProviderClient):
    """Async client for the Strike API."""

    provider = "strike"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.strike.me",
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            base_url,
            {
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "User-Agent": "PaidIn/1.0",
            },
            max_attempts=max_attempts,
            retry_base_delay=retry_base_delay,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "StrikeAdapter":
        return cls(
            settings.STRIKE_API_KEY,
            base_url=settings.STRIKE_BASE_URL,
            max_attempts=settings.PROVIDER_MAX_RETRIES,
            retry_base_delay=settings.PROVIDER_RETRY_BASE_DELAY,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
            **kwargs,
        )

    def _error_for(self, response: httpx.Response, data: dict) -> ProviderError:
        error = data.get("error")
        code = error.get("code") if isinstance(error, dict) else data.get("code")
        if code in EXPIRED_QUOTE_CODES or response.status_code == 410:
            return QuoteExpiredError(data.get("quoteId", "unknown"), response_data=data)
        return super()._error_for(response, data)

    # =========================================================================
    # Quotes
    # =========================================================================

    async def create_quote(self, amount_usd: Decimal) -> Quote:
        """Request a USD to BTC quote."""
        data = await self._request(
            "POST",
            "/v1/quotes",
            json_data={
                "amount": str(amount_usd),
                "currency": "USD",
                "type": "usd_to_btc",
            },
        )
        quote = Quote.from_response(data)
        logger.info(
            "Strike quote %s: %s USD -> %s BTC at %s",
            quote.quote_id,
            quote.amount_usd,
            quote.amount_btc,
            quote.exchange_rate,
        )
        return quote

    async def execute_quote(
        self, quote_id: str, expires_at: Optional[datetime] = None
    ) -> Quote:
        """Lock in a quote. Fails with QuoteExpiredError once it has expired."""
        if expires_at is not None and ensure_utc(expires_at) <= utc_now():
            raise QuoteExpiredError(quote_id)
        try:
            data = await self._request("POST", f"/v1/quotes/{quote_id}/execute")
        except QuoteExpiredError as exc:
            raise QuoteExpiredError(quote_id, response_data=exc.response_data) from exc
        return Quote.from_response(data)

    async def get_quote_status(self, quote_id: str) -> Quote:
        data = await self._request("GET", f"/v1/quotes/{quote_id}")
        return Quote.from_response(data)

    async def get_exchange_rate(
        self, from_currency: str = "BTC", to_currency: str = "USD"
    ) -> Decimal:
        data = await self._request("GET", f"/v1/rates/{from_currency}/{to_currency}")
        return Decimal(str(data["rate"]))

    # =========================================================================
    # Invoices and payments
    # =========================================================================

    async def create_invoice(self, amount_btc: Decimal, description: str) -> StrikeInvoice:
        data = await self._request(
            "POST",
            "/v1/invoices",
            json_data={
                "amount": str(amount_btc),
                "currency": "BTC",
                "description": description,
            },
        )
        return StrikeInvoice(
            invoice_id=data["invoiceId"],
            bolt11=data["invoice"],
            amount_btc=Decimal(str(data.get("amount", amount_btc))),
            status=data.get("status", "pending"),
        )

    async def pay_invoice(
        self, invoice: str, quote_id: Optional[str] = None
    ) -> StrikePayment:
        """Pay a Lightning invoice, funded by an executed quote when given."""
        data = await self._request(
            "POST",
            "/v1/payments",
            json_data={"invoice": invoice, "quoteId": quote_id},
        )
        return StrikePayment(
            payment_id=data["paymentId"],
            status=data.get("status", "pending"),
            transaction_hash=data.get("transactionHash"),
        )

    # =========================================================================
    # Swaps
    # =========================================================================

    async def swap_btc_to_usd(self, amount_btc: Decimal) -> Swap:
        data = await self._request(
            "POST",
            "/v1/swaps",
            json_data={
                "amount": str(amount_btc),
                "fromCurrency": "BTC",
                "toCurrency": "USD",
            },
        )
        return self._swap(data)

    async def get_swap_status(self, swap_id: str) -> Swap:
        data = await self._request("GET", f"/v1/swaps/{swap_id}")
        return self._swap(data)

    @staticmethod
    def _swap(data: dict) -> Swap:
        return Swap(
            swap_id=data["swapId"],
            amount_btc=Decimal(str(data["amountBtc"])),
            amount_usd=Decimal(str(data["amountUsd"])),
            exchange_rate=Decimal(str(data["exchangeRate"])),
            status=data.get("status", "pending"),
        )
