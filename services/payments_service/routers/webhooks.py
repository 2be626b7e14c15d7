"""Signed provider callbacks (Stripe, Strike, Breez, Plaid)."""

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from libs.common.logging import get_logger
from services.payments_service.container import PaymentServices, get_services
from services.payments_service.errors import SignatureVerificationError, ValidationError
from services.payments_service.models import WebhookProvider

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = get_logger(__name__)


@router.post("/{provider}")
async def receive_webhook(
    provider: WebhookProvider,
    request: Request,
    services: PaymentServices = Depends(get_services),
):
    """
    Provider webhook endpoint (no auth; verified by the provider signature).

    Answers ``{"received": true}`` once the event is stored and queued (or
    processed inline when the queue is degraded), and 400 otherwise.
    """
    raw = await request.body()
    try:
        result = await services.webhooks.receive(provider, raw, request.headers)
    except (SignatureVerificationError, ValidationError) as exc:
        logger.warning("Rejected %s webhook: %s", provider.value, exc.message)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST, content={"error": exc.message}
        )
    except Exception as exc:
        # The provider redelivers on non-2xx; an unprocessed event is retried.
        logger.error("%s webhook processing failed: %s", provider.value, exc)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Webhook processing failed"},
        )

    return {"received": True, "duplicate": result.duplicate}
