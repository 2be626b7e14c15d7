"""Shared exception handlers producing ``{"error", "code"}`` JSON bodies."""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from libs.common.logging import get_logger, get_request_id

logger = get_logger(__name__)


def error_response(status_code: int, message: str, code: str) -> JSONResponse:
    content = {"error": message, "code": code}
    request_id = get_request_id()
    if request_id:
        content["request_id"] = request_id
    return JSONResponse(status_code=status_code, content=content)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "Unhandled exception on %s %s",
        request.method,
        request.url.path,
        extra={"extra_fields": {"error": str(exc)}},
    )
    return error_response(500, "Internal server error", "INTERNAL_ERROR")


def add_exception_handlers(app: FastAPI) -> None:
    """Register the catch-all handler; services add their domain handlers."""
    app.add_exception_handler(Exception, unhandled_exception_handler)
