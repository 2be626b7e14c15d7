"""
Webhook dispatcher: verify, persist, dedupe and route provider callbacks.

Every delivery takes the same path. The raw body is verified against the
provider's signature scheme, stored as a WebhookEvent (unique per provider
and event id), then processed on the webhook job lane. When the queue is
degraded the event is processed inline instead.
"""

import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping, Optional, Sequence

from libs.common.logging import get_logger
from services.payments_service import storage
from services.payments_service.errors import SignatureVerificationError, ValidationError
from services.payments_service.events import ProviderEvent, decode_event, envelope
from services.payments_service.job_queue import PaymentQueue, WebhookJobData
from services.payments_service.models import WebhookEvent, WebhookProvider
from services.payments_service.providers import PlaidAdapter, StripeAdapter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)

EventHandler = Callable[[ProviderEvent], Awaitable[None]]

SIGNATURE_HEADERS = {
    WebhookProvider.STRIPE: "stripe-signature",
    WebhookProvider.STRIKE: "strike-signature",
    WebhookProvider.BREEZ: "breez-signature",
    WebhookProvider.PLAID: "plaid-verification",
}


@dataclass
class IngestResult:
    webhook_event_id: uuid.UUID
    duplicate: bool
    processed: bool
    job_id: Optional[str] = None


def verify_hmac_signature(body: bytes, signature: Optional[str], secret: str) -> None:
    """Check a hex HMAC-SHA256 of the raw body in constant time."""
    if not signature:
        raise SignatureVerificationError("Missing webhook signature")
    if not secret:
        raise SignatureVerificationError("Webhook secret is not configured")
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise SignatureVerificationError("Invalid webhook signature")


class WebhookDispatcher:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        queue: PaymentQueue,
        handler: EventHandler,
        stripe: StripeAdapter,
        plaid: PlaidAdapter,
        strike_secret: str,
        breez_secret: str,
    ):
        self._session_factory = session_factory
        self.queue = queue
        self.handler = handler
        self.stripe = stripe
        self.plaid = plaid
        self.strike_secret = strike_secret
        self.breez_secret = breez_secret

    async def verify(
        self, provider: WebhookProvider, body: bytes, headers: Mapping[str, str]
    ) -> dict:
        """Verify the delivery signature and return the parsed payload."""
        signature = headers.get(SIGNATURE_HEADERS[provider])

        if provider == WebhookProvider.STRIPE:
            return self.stripe.verify_webhook_signature(body, signature)
        if provider == WebhookProvider.PLAID:
            return await self.plaid.verify_webhook(body, signature)

        secret = (
            self.strike_secret if provider == WebhookProvider.STRIKE else self.breez_secret
        )
        verify_hmac_signature(body, signature, secret)
        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise ValidationError(f"{provider.value} webhook body is not JSON") from exc
        if not isinstance(payload, dict):
            raise ValidationError(f"{provider.value} webhook body must be an object")
        return payload

    async def receive(
        self, provider: WebhookProvider, body: bytes, headers: Mapping[str, str]
    ) -> IngestResult:
        """Verify a raw delivery and hand it to ``ingest``."""
        payload = await self.verify(provider, body, headers)
        event_type, event_id = envelope(provider, payload)
        return await self.ingest(provider, event_type, event_id, payload)

    async def ingest(
        self,
        provider: WebhookProvider,
        event_type: str,
        event_id: str,
        payload: dict,
    ) -> IngestResult:
        async with self._session_factory() as db:
            event, created = await storage.create_webhook_event(
                db,
                provider=provider,
                event_type=event_type,
                event_id=event_id,
                payload=payload,
            )
            webhook_event_id = event.id
            attempts = event.attempts
            already_processed = event.processed

        log_fields = {
            "provider": provider.value,
            "event_type": event_type,
            "event_id": event_id,
        }
        if already_processed:
            logger.info(
                "Duplicate %s webhook %s ignored",
                provider.value,
                event_id,
                extra={"extra_fields": log_fields},
            )
            return IngestResult(webhook_event_id, duplicate=True, processed=True)

        job = await self.queue.add_webhook_job(
            WebhookJobData(webhook_event_id=webhook_event_id), attempt=attempts
        )
        if job is not None:
            logger.info(
                "Queued %s webhook %s",
                provider.value,
                event_id,
                extra={"extra_fields": {**log_fields, "job_id": job.job_id}},
            )
            return IngestResult(
                webhook_event_id,
                duplicate=not created,
                processed=False,
                job_id=job.job_id,
            )

        await self.process(webhook_event_id)
        return IngestResult(webhook_event_id, duplicate=not created, processed=True)

    async def process(self, webhook_event_id: uuid.UUID) -> WebhookEvent:
        """
        Run the handler for a stored event.

        Marks the event processed, or records the error and re-raises so the
        webhook lane can retry.
        """
        async with self._session_factory() as db:
            event = await storage.get_webhook_event(db, webhook_event_id)
            if event is None:
                raise ValidationError(f"Unknown webhook event {webhook_event_id}")
            provider, event_type, event_id = event.provider, event.event_type, event.event_id

            try:
                decoded = decode_event(provider, event_type, event_id, event.payload)
                await self.handler(decoded)
            except Exception as exc:
                await db.rollback()
                event = await storage.get_webhook_event(db, webhook_event_id)
                await storage.mark_webhook_failed(db, event, str(exc))
                logger.error(
                    "Webhook %s %s failed: %s",
                    provider.value,
                    event_id,
                    exc,
                    extra={
                        "extra_fields": {
                            "webhook_event_id": str(webhook_event_id),
                            "event_type": event_type,
                        }
                    },
                )
                raise

            event = await storage.get_webhook_event(db, webhook_event_id)
            return await storage.mark_webhook_processed(db, event)

    async def replay(self, webhook_event_id: uuid.UUID) -> WebhookEvent:
        """Re-run the handler on a stored payload, processed or not."""
        logger.info("Replaying webhook event %s", webhook_event_id)
        return await self.process(webhook_event_id)

    async def list_events(
        self,
        *,
        provider: Optional[WebhookProvider] = None,
        processed: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[Sequence[WebhookEvent], int]:
        async with self._session_factory() as db:
            return await storage.list_webhook_events(
                db, provider=provider, processed=processed, limit=limit, offset=offset
            )
