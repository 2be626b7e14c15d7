"""
Stripe adapter: ACH debits against linked bank accounts.

Provides async methods for:
- Creating us_bank_account payment methods from Plaid ACH numbers
- Creating, confirming, retrieving and cancelling payment intents
- Refunds
- Verifying webhook signatures and mirroring intent status from events
"""

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
import stripe
from libs.common.config import Settings
from libs.common.logging import get_logger
from services.payments_service import storage
from services.payments_service.errors import SignatureVerificationError, ValidationError
from services.payments_service.events import StripeChargeEvent, StripePaymentIntentEvent
from services.payments_service.models import PaymentIntent, PaymentIntentStatus
from services.payments_service.providers.base import ProviderClient
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300


@dataclass
class PaymentMethod:
    """A Stripe payment method."""

    id: str
    type: str
    last4: Optional[str] = None
    bank_name: Optional[str] = None


@dataclass
class StripeIntent:
    """A payment intent as Stripe reports it."""

    id: str
    status: str
    amount: int  # cents
    currency: str
    created: Optional[int] = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_response(cls, data: dict) -> "StripeIntent":
        return cls(
            id=data["id"],
            status=data["status"],
            amount=data["amount"],
            currency=data.get("currency", "usd"),
            created=data.get("created"),
            metadata=data.get("metadata") or {},
        )


@dataclass
class Refund:
    id: str
    status: str
    amount: int


def encode_form(data: dict, prefix: Optional[str] = None) -> dict[str, Any]:
    """Flatten nested params into Stripe's bracketed form encoding."""
    encoded: dict[str, Any] = {}
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else key
        if value is None:
            continue
        if isinstance(value, dict):
            encoded.update(encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            encoded[f"{name}[]"] = [str(item) for item in value]
        elif isinstance(value, bool):
            encoded[name] = "true" if value else "false"
        else:
            encoded[name] = str(value)
    return encoded


class StripeAdapter(ProviderClient):
    """Async client for the Stripe PaymentIntents API."""

    provider = "stripe"

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        *,
        base_url: str = "https://api.stripe.com",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            base_url,
            {"Authorization": f"Bearer {secret_key}"},
            timeout=timeout,
            transport=transport,
        )
        self.webhook_secret = webhook_secret

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "StripeAdapter":
        return cls(
            settings.STRIPE_SECRET_KEY,
            settings.STRIPE_WEBHOOK_SECRET,
            base_url=settings.STRIPE_BASE_URL,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
            **kwargs,
        )

    async def _post(
        self, endpoint: str, params: dict, idempotency_key: Optional[str] = None
    ) -> dict:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        return await self._request(
            "POST", endpoint, form_data=encode_form(params), headers=headers
        )

    # =========================================================================
    # Payment methods
    # =========================================================================

    async def create_payment_method_from_plaid(
        self,
        account_number: str,
        routing_number: str,
        holder_name: str,
        account_type: str = "checking",
    ) -> PaymentMethod:
        """Create a us_bank_account payment method from ACH numbers."""
        data = await self._post(
            "/v1/payment_methods",
            {
                "type": "us_bank_account",
                "us_bank_account": {
                    "account_number": account_number,
                    "routing_number": routing_number,
                    "account_holder_type": "individual",
                    "account_type": account_type,
                },
                "billing_details": {"name": holder_name},
            },
        )
        bank = data.get("us_bank_account") or {}
        return PaymentMethod(
            id=data["id"],
            type=data.get("type", "us_bank_account"),
            last4=bank.get("last4"),
            bank_name=bank.get("bank_name"),
        )

    # =========================================================================
    # Payment intents
    # =========================================================================

    async def create_payment_intent(
        self,
        db: AsyncSession,
        *,
        amount_cents: int,
        plaid_account_id: uuid.UUID,
        company_id: int,
        user_id: int,
        metadata: Optional[dict] = None,
    ) -> PaymentIntent:
        """Create an ACH payment intent and persist the local mirror."""
        metadata = {
            "company_id": company_id,
            "user_id": user_id,
            "plaid_account_id": str(plaid_account_id),
            **(metadata or {}),
        }
        data = await self._post(
            "/v1/payment_intents",
            {
                "amount": amount_cents,
                "currency": "usd",
                "payment_method_types": ["us_bank_account"],
                "confirmation_method": "manual",
                "metadata": metadata,
            },
            idempotency_key=metadata.get("request_id"),
        )
        intent = await storage.create_payment_intent(
            db,
            company_id=company_id,
            user_id=user_id,
            stripe_payment_intent_id=data["id"],
            amount=amount_cents,
            currency=data.get("currency", "usd"),
            status=PaymentIntentStatus(data.get("status", "requires_payment_method")),
            plaid_account_id=plaid_account_id,
            intent_metadata=metadata,
        )
        logger.info(
            "Created Stripe payment intent %s for %d cents",
            intent.stripe_payment_intent_id,
            amount_cents,
            extra={"extra_fields": {"company_id": company_id, "user_id": user_id}},
        )
        return intent

    async def confirm_payment_intent(
        self, db: AsyncSession, payment_intent_id: str, payment_method_id: str
    ) -> PaymentIntent:
        """Confirm an intent with a payment method and mirror the new status."""
        data = await self._post(
            f"/v1/payment_intents/{payment_intent_id}/confirm",
            {
                "payment_method": payment_method_id,
                "mandate_data": {"customer_acceptance": {"type": "offline"}},
            },
        )
        return await self._mirror_status(db, payment_intent_id, data["status"])

    async def retrieve_payment_intent(self, payment_intent_id: str) -> StripeIntent:
        data = await self._request("GET", f"/v1/payment_intents/{payment_intent_id}")
        return StripeIntent.from_response(data)

    async def cancel_payment_intent(
        self, db: AsyncSession, payment_intent_id: str
    ) -> PaymentIntent:
        data = await self._post(f"/v1/payment_intents/{payment_intent_id}/cancel", {})
        return await self._mirror_status(db, payment_intent_id, data["status"])

    async def create_refund(
        self, payment_intent_id: str, amount_cents: Optional[int] = None
    ) -> Refund:
        data = await self._post(
            "/v1/refunds",
            {"payment_intent": payment_intent_id, "amount": amount_cents},
        )
        logger.info("Created refund %s for %s", data["id"], payment_intent_id)
        return Refund(id=data["id"], status=data["status"], amount=data["amount"])

    async def _mirror_status(
        self, db: AsyncSession, payment_intent_id: str, status: str
    ) -> Optional[PaymentIntent]:
        intent = await storage.get_payment_intent_by_stripe_id(db, payment_intent_id)
        if intent is None:
            logger.warning("No local record for Stripe intent %s", payment_intent_id)
            return None
        return await storage.update_payment_intent_status(
            db, intent, PaymentIntentStatus(status)
        )

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> dict:
        """
        Verify a Stripe-Signature header and return the event.

        Fails closed: any signature problem raises SignatureVerificationError.
        A verified body that is not a JSON object raises ValidationError.
        """
        if not signature:
            raise SignatureVerificationError("Missing Stripe-Signature header")
        if not self.webhook_secret:
            raise SignatureVerificationError("Stripe webhook secret is not configured")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self.webhook_secret,
                tolerance=SIGNATURE_TOLERANCE_SECONDS,
            )
        except stripe.SignatureVerificationError as exc:
            raise SignatureVerificationError("Invalid Stripe signature") from exc
        except ValueError as exc:
            raise SignatureVerificationError("Invalid Stripe payload") from exc

        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise ValidationError("stripe webhook body is not JSON") from exc
        if not isinstance(event, dict):
            raise ValidationError("stripe webhook body must be an object")
        return event

    async def handle_webhook(
        self,
        db: AsyncSession,
        event: StripePaymentIntentEvent | StripeChargeEvent,
    ) -> Optional[PaymentIntent]:
        """Mirror a Stripe event onto the local intent record."""
        if isinstance(event, StripeChargeEvent):
            return await self._on_charge(db, event)
        return await self._on_payment_intent(db, event)

    async def _on_payment_intent(
        self, db: AsyncSession, event: StripePaymentIntentEvent
    ) -> Optional[PaymentIntent]:
        if event.status == PaymentIntentStatus.FAILED:
            logger.warning(
                "Payment intent %s failed: %s",
                event.payment_intent_id,
                event.failure_message or "no reason given",
            )
        return await self._mirror_status(db, event.payment_intent_id, event.status.value)

    async def _on_charge(
        self, db: AsyncSession, event: StripeChargeEvent
    ) -> Optional[PaymentIntent]:
        logger.warning(
            "Stripe %s for charge %s (payment intent %s, %d cents)",
            event.event_type,
            event.charge_id,
            event.payment_intent_id,
            event.amount,
            extra={"extra_fields": {"event_id": event.event_id}},
        )
        if event.payment_intent_id:
            return await storage.get_payment_intent_by_stripe_id(
                db, event.payment_intent_id
            )
        return None
