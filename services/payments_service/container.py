"""Process-level wiring: adapters, queue, orchestrator and dispatcher."""

from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Request
from libs.common.config import Settings
from libs.common.logging import get_logger
from services.payments_service.job_queue import PaymentQueue
from services.payments_service.orchestrator import PaymentOrchestrator
from services.payments_service.providers import (
    BreezAdapter,
    PaymentService,
    PlaidAdapter,
    StrikeAdapter,
    StripeAdapter,
    create_payment_service,
)
from services.payments_service.webhooks import WebhookDispatcher
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)


@dataclass
class PaymentServices:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    queue: PaymentQueue
    plaid: PlaidAdapter
    stripe: StripeAdapter
    strike: StrikeAdapter
    breez: BreezAdapter
    invoicing: PaymentService
    orchestrator: PaymentOrchestrator
    webhooks: WebhookDispatcher

    async def close(self) -> None:
        await self.queue.close()


def get_services(request: Request) -> PaymentServices:
    """FastAPI dependency returning the services built at startup."""
    return request.app.state.services


async def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    queue: Optional[PaymentQueue] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> PaymentServices:
    """
    Construct every service once for the process.

    ``queue`` skips the broker connection (tests, scripts); ``transport`` is
    handed to every provider client.
    """
    if queue is None:
        queue = await PaymentQueue.connect(settings)

    plaid = PlaidAdapter.from_settings(settings, transport=transport)
    stripe = StripeAdapter.from_settings(settings, transport=transport)
    strike = StrikeAdapter.from_settings(settings, transport=transport)
    breez = BreezAdapter.from_settings(settings, transport=transport)

    orchestrator = PaymentOrchestrator(
        session_factory=session_factory,
        plaid=plaid,
        stripe=stripe,
        strike=strike,
        breez=breez,
        queue=queue,
        conversion_fee_tolerance=settings.CONVERSION_FEE_TOLERANCE,
        funding_claim_stale_seconds=settings.FUNDING_CLAIM_STALE_SECONDS,
    )
    webhooks = WebhookDispatcher(
        session_factory=session_factory,
        queue=queue,
        handler=orchestrator.apply_event,
        stripe=stripe,
        plaid=plaid,
        strike_secret=settings.STRIKE_WEBHOOK_SECRET,
        breez_secret=settings.BREEZ_WEBHOOK_SECRET,
    )
    orchestrator.webhooks = webhooks

    logger.info(
        "Payment services ready (queue %s)",
        "available" if queue.available else "degraded",
    )
    return PaymentServices(
        settings=settings,
        session_factory=session_factory,
        queue=queue,
        plaid=plaid,
        stripe=stripe,
        strike=strike,
        breez=breez,
        invoicing=create_payment_service(settings, transport=transport),
        orchestrator=orchestrator,
        webhooks=webhooks,
    )
