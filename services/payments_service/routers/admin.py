"""Admin tooling: webhook inspection and replay, pipeline health, funding repair."""

import uuid
from datetime import timedelta
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query
from libs.auth.dependencies import require_admin
from libs.auth.models import AuthUser
from libs.common.currency import cents_to_usd
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from libs.db.session import get_async_db
from services.payments_service import storage
from services.payments_service.container import PaymentServices, get_services
from services.payments_service.models import WebhookProvider
from services.payments_service.schemas import (
    CancelResponse,
    ConversionStatsResponse,
    PaymentHealthResponse,
    RefundRequest,
    RefundResponse,
    RetryResponse,
    WebhookEventListResponse,
    WebhookEventResponse,
)
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/admin", tags=["admin"])
logger = get_logger(__name__)

HEALTH_WINDOW_HOURS = 24
STALE_WEBHOOK_MINUTES = 15

Admin = Annotated[AuthUser, Depends(require_admin)]
Services = Annotated[PaymentServices, Depends(get_services)]


@router.get("/webhooks", response_model=WebhookEventListResponse)
async def list_webhook_events(
    _admin: Admin,
    services: Services,
    provider: Optional[WebhookProvider] = None,
    processed: Optional[bool] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    events, total = await services.webhooks.list_events(
        provider=provider, processed=processed, limit=limit, offset=offset
    )
    return WebhookEventListResponse(
        events=[WebhookEventResponse.model_validate(event) for event in events],
        total=total,
        has_more=offset + len(events) < total,
    )


@router.post("/webhooks/{webhook_event_id}/replay", response_model=WebhookEventResponse)
async def replay_webhook_event(
    webhook_event_id: uuid.UUID, admin: Admin, services: Services
):
    """Re-run the handler for a stored event. Safe to repeat."""
    logger.info(
        "Admin replay of webhook %s",
        webhook_event_id,
        extra={"extra_fields": {"admin_user_id": admin.user_id}},
    )
    return await services.webhooks.replay(webhook_event_id)


@router.get("/payments/health", response_model=PaymentHealthResponse)
async def payments_health(
    _admin: Admin,
    services: Services,
    db: AsyncSession = Depends(get_async_db),
):
    since = utc_now() - timedelta(hours=HEALTH_WINDOW_HOURS)
    transactions = await storage.count_transactions_since(db, since=since)
    webhooks = await storage.webhook_health_counts(
        db, since=since, stale_after=timedelta(minutes=STALE_WEBHOOK_MINUTES)
    )
    return PaymentHealthResponse(
        window_hours=HEALTH_WINDOW_HOURS,
        transactions=transactions,
        webhooks=webhooks,
        queue_available=services.queue.available,
    )


@router.get("/payments/conversions", response_model=ConversionStatsResponse)
async def conversion_statistics(
    _admin: Admin, db: AsyncSession = Depends(get_async_db)
):
    return ConversionStatsResponse(**await storage.conversion_stats(db))


@router.post("/payments/{payment_intent_id}/retry", response_model=RetryResponse)
async def retry_funding(payment_intent_id: str, admin: Admin, services: Services):
    """Queue another funding run for a payment intent without a completed row."""
    job_id = await services.orchestrator.retry_funding(payment_intent_id)
    logger.info(
        "Admin funding retry for %s: %s",
        payment_intent_id,
        job_id or "not queued",
        extra={"extra_fields": {"admin_user_id": admin.user_id}},
    )
    return RetryResponse(
        payment_intent_id=payment_intent_id, job_id=job_id, queued=job_id is not None
    )


@router.post("/payments/{payment_intent_id}/cancel", response_model=CancelResponse)
async def cancel_funding(payment_intent_id: str, admin: Admin, services: Services):
    """Cancel a funding debit that has not settled and record the failed attempt."""
    intent = await services.orchestrator.cancel_funding(payment_intent_id)
    logger.info(
        "Admin canceled funding %s",
        payment_intent_id,
        extra={"extra_fields": {"admin_user_id": admin.user_id}},
    )
    return CancelResponse(payment_intent_id=payment_intent_id, status=intent.status.value)


@router.post("/payments/{payment_intent_id}/refund", response_model=RefundResponse)
async def refund_funding(
    payment_intent_id: str,
    admin: Admin,
    services: Services,
    body: Optional[RefundRequest] = None,
):
    """Refund a settled debit whose funding never produced BTC."""
    refund = await services.orchestrator.refund_funding(
        payment_intent_id, body.amount_usd if body else None
    )
    logger.info(
        "Admin refund %s for %s",
        refund.id,
        payment_intent_id,
        extra={"extra_fields": {"admin_user_id": admin.user_id}},
    )
    return RefundResponse(
        payment_intent_id=payment_intent_id,
        refund_id=refund.id,
        status=refund.status,
        amount_usd=cents_to_usd(refund.amount),
    )
