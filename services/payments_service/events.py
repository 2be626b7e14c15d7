"""Typed provider webhook events.

Each verified callback is decoded once, at ingestion, into one variant per
provider and event type. Handlers work with these models and never inspect
raw payload shapes.
"""

import hashlib
import json
from decimal import Decimal
from typing import Any, ClassVar, Optional, Union

from pydantic import BaseModel, ConfigDict
from services.payments_service.errors import ValidationError
from services.payments_service.models import PaymentIntentStatus, WebhookProvider


class ProviderEventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: ClassVar[WebhookProvider]
    event_types: ClassVar[tuple[str, ...]] = ()

    event_type: str
    event_id: str

    @classmethod
    def fields_from(cls, payload: dict) -> dict[str, Any]:
        """Pull this variant's fields out of the raw provider payload."""
        return {}


# ---------------------------------------------------------------------------
# Stripe: payload is the full Stripe event object
# ---------------------------------------------------------------------------


def _stripe_object(payload: dict) -> dict:
    return (payload.get("data") or {}).get("object") or {}


class StripePaymentIntentEvent(ProviderEventBase):
    provider = WebhookProvider.STRIPE
    event_types = (
        "payment_intent.succeeded",
        "payment_intent.payment_failed",
        "payment_intent.canceled",
        "payment_intent.processing",
        "payment_intent.requires_action",
    )

    payment_intent_id: str
    status: PaymentIntentStatus
    amount: int
    currency: str = "usd"
    metadata: dict = {}
    failure_message: Optional[str] = None

    @classmethod
    def fields_from(cls, payload: dict) -> dict[str, Any]:
        intent = _stripe_object(payload)
        status = intent.get("status")
        if payload.get("type") == "payment_intent.payment_failed":
            status = PaymentIntentStatus.FAILED.value
        return {
            "payment_intent_id": intent.get("id"),
            "status": status,
            "amount": intent.get("amount"),
            "currency": intent.get("currency") or "usd",
            "metadata": intent.get("metadata") or {},
            "failure_message": (intent.get("last_payment_error") or {}).get("message"),
        }


class StripeChargeEvent(ProviderEventBase):
    provider = WebhookProvider.STRIPE
    event_types = ("charge.refunded", "charge.dispute.created")

    charge_id: str
    payment_intent_id: Optional[str] = None
    amount: int = 0

    @classmethod
    def fields_from(cls, payload: dict) -> dict[str, Any]:
        obj = _stripe_object(payload)
        # Dispute objects reference the charge; refunded events are the charge.
        return {
            "charge_id": obj.get("charge") or obj.get("id"),
            "payment_intent_id": obj.get("payment_intent"),
            "amount": obj.get("amount_refunded") or obj.get("amount") or 0,
        }


# ---------------------------------------------------------------------------
# Strike: {"id", "eventType", "data": {...}}
# ---------------------------------------------------------------------------


class StrikeQuoteEvent(ProviderEventBase):
    provider = WebhookProvider.STRIKE
    event_types = ("quote.completed", "quote.failed")

    quote_id: str
    amount_usd: Optional[Decimal] = None
    amount_btc: Optional[Decimal] = None
    exchange_rate: Optional[Decimal] = None
    error: Optional[str] = None

    @classmethod
    def fields_from(cls, payload: dict) -> dict[str, Any]:
        data = payload.get("data") or {}
        return {
            "quote_id": data.get("quoteId"),
            "amount_usd": data.get("amountUsd"),
            "amount_btc": data.get("amountBtc"),
            "exchange_rate": data.get("exchangeRate"),
            "error": data.get("error"),
        }


class StrikeInvoiceEvent(ProviderEventBase):
    provider = WebhookProvider.STRIKE
    event_types = ("invoice.paid", "invoice.expired")

    invoice_id: str

    @classmethod
    def fields_from(cls, payload: dict) -> dict[str, Any]:
        return {"invoice_id": (payload.get("data") or {}).get("invoiceId")}


class StrikeSwapEvent(ProviderEventBase):
    provider = WebhookProvider.STRIKE
    event_types = ("swap.completed", "swap.failed")

    swap_id: str
    error: Optional[str] = None

    @classmethod
    def fields_from(cls, payload: dict) -> dict[str, Any]:
        data = payload.get("data") or {}
        return {"swap_id": data.get("swapId"), "error": data.get("error")}


# ---------------------------------------------------------------------------
# Breez: {"id", "type", "data": {...}}
# ---------------------------------------------------------------------------


class BreezInvoiceEvent(ProviderEventBase):
    provider = WebhookProvider.BREEZ
    event_types = ("invoice.paid", "invoice.expired")

    invoice_id: str
    node_id: Optional[str] = None
    amount_sats: Optional[int] = None

    @classmethod
    def fields_from(cls, payload: dict) -> dict[str, Any]:
        data = payload.get("data") or {}
        return {
            "invoice_id": data.get("invoiceId"),
            "node_id": data.get("nodeId"),
            "amount_sats": data.get("amountSats"),
        }


class BreezPaymentEvent(ProviderEventBase):
    provider = WebhookProvider.BREEZ
    event_types = ("payment.completed", "payment.failed")

    payment_id: str
    node_id: Optional[str] = None
    amount_sats: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def fields_from(cls, payload: dict) -> dict[str, Any]:
        data = payload.get("data") or {}
        return {
            "payment_id": data.get("paymentId"),
            "node_id": data.get("nodeId"),
            "amount_sats": data.get("amountSats"),
            "error": data.get("error"),
        }


class BreezWalletSyncedEvent(ProviderEventBase):
    provider = WebhookProvider.BREEZ
    event_types = ("wallet.synced",)

    node_id: str
    balance_sats: int

    @classmethod
    def fields_from(cls, payload: dict) -> dict[str, Any]:
        data = payload.get("data") or {}
        balance = data.get("balance")
        if isinstance(balance, dict):
            balance = balance.get("total")
        return {"node_id": data.get("nodeId"), "balance_sats": balance}


# ---------------------------------------------------------------------------
# Plaid: {"webhook_type", "webhook_code", "item_id", "error"?}
# ---------------------------------------------------------------------------


class PlaidItemEvent(ProviderEventBase):
    provider = WebhookProvider.PLAID
    event_types = (
        "ERROR",
        "ITEM_LOGIN_REQUIRED",
        "PENDING_EXPIRATION",
        "LOGIN_REPAIRED",
        "NEW_ACCOUNTS_AVAILABLE",
    )

    item_id: str
    error_code: Optional[str] = None

    @classmethod
    def fields_from(cls, payload: dict) -> dict[str, Any]:
        return {
            "item_id": payload.get("item_id"),
            "error_code": (payload.get("error") or {}).get("error_code"),
        }


class UnhandledEvent(ProviderEventBase):
    """A verified event type no handler cares about. Stored and acknowledged."""

    provider_name: WebhookProvider


ProviderEvent = Union[
    StripePaymentIntentEvent,
    StripeChargeEvent,
    StrikeQuoteEvent,
    StrikeInvoiceEvent,
    StrikeSwapEvent,
    BreezInvoiceEvent,
    BreezPaymentEvent,
    BreezWalletSyncedEvent,
    PlaidItemEvent,
    UnhandledEvent,
]

_VARIANTS: dict[tuple[WebhookProvider, str], type[ProviderEventBase]] = {
    (variant.provider, event_type): variant
    for variant in (
        StripePaymentIntentEvent,
        StripeChargeEvent,
        StrikeQuoteEvent,
        StrikeInvoiceEvent,
        StrikeSwapEvent,
        BreezInvoiceEvent,
        BreezPaymentEvent,
        BreezWalletSyncedEvent,
        PlaidItemEvent,
    )
    for event_type in variant.event_types
}


def envelope(provider: WebhookProvider, payload: dict) -> tuple[str, str]:
    """
    Return ``(event_type, event_id)`` for a verified payload.

    Plaid sends no delivery id, so its id is a digest of the payload.
    """
    if provider == WebhookProvider.STRIPE:
        event_type, event_id = payload.get("type"), payload.get("id")
    elif provider == WebhookProvider.STRIKE:
        event_type, event_id = payload.get("eventType"), payload.get("id")
    elif provider == WebhookProvider.BREEZ:
        event_type, event_id = payload.get("type"), payload.get("id")
    else:
        event_type = payload.get("webhook_code")
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        event_id = "plaid_" + hashlib.sha256(canonical.encode()).hexdigest()[:32]

    if not event_type or not event_id:
        raise ValidationError(f"{provider.value} webhook is missing its type or id")
    return str(event_type), str(event_id)


def decode_event(
    provider: WebhookProvider, event_type: str, event_id: str, payload: dict
) -> ProviderEvent:
    """Decode a stored payload into its typed event variant."""
    variant = _VARIANTS.get((provider, event_type))
    if variant is None:
        return UnhandledEvent(
            provider_name=provider, event_type=event_type, event_id=event_id
        )
    try:
        return variant(
            event_type=event_type, event_id=event_id, **variant.fields_from(payload)
        )
    except ValueError as exc:
        raise ValidationError(
            f"Malformed {provider.value} {event_type} payload: {exc}"
        ) from exc
