"""FastAPI application for the PaidIn payments service."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from libs.common.config import get_settings
from libs.common.error_handler import add_exception_handlers, error_response
from libs.common.logging import get_logger
from libs.common.middleware import add_observability_middleware
from libs.db.config import AsyncSessionLocal
from services.payments_service.container import build_services
from services.payments_service.errors import PaymentError
from services.payments_service.routers import (
    admin_router,
    payments_router,
    webhooks_router,
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the payment services once per process."""
    services = getattr(app.state, "services", None)
    if services is None:
        services = await build_services(get_settings(), AsyncSessionLocal)
        app.state.services = services
    try:
        yield
    finally:
        await services.close()


async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
    return error_response(exc.status_code, exc.message, exc.code)


def create_app() -> FastAPI:
    """Create and configure the payments FastAPI app."""
    app = FastAPI(
        title="PaidIn Payments Service",
        version="0.1.0",
        description="Bank funding, BTC conversion and Lightning payouts for PaidIn.",
        lifespan=lifespan,
    )

    # Add observability (structured logging + request tracing)
    add_observability_middleware(app)

    add_exception_handlers(app)
    app.add_exception_handler(PaymentError, payment_error_handler)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "payments"}

    app.include_router(payments_router)
    app.include_router(webhooks_router)
    app.include_router(admin_router)

    return app


app = create_app()
