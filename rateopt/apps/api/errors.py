from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from rateopt.apps.api.response import error_response, wants_envelope
from rateopt.core.errors import (
    BillingPeriodNotFoundError,
    InstanceNotFoundError,
    OptimizationRunningError,
    OptimizationValidationError,
    OptimizerError,
    SessionNotFoundError,
    TransientStoreError,
)


logger = logging.getLogger(__name__)

# Routing-level failures only; domain errors carry their own codes.
_STATUS_CODES: dict[int, str] = {
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


def _plain_or_envelope(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    plain: Any = None,
) -> JSONResponse:
    if not wants_envelope(request):
        return JSONResponse(content={"detail": plain if plain is not None else message}, status_code=status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _plain_or_envelope(
        request,
        status_code=exc.status_code,
        code=_STATUS_CODES.get(exc.status_code, "HTTP_ERROR"),
        message=str(exc.detail),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Body and path validation failures keep pydantic's error list for clients.
    return _plain_or_envelope(
        request,
        status_code=422,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
        plain=exc.errors(),
    )


def _optimizer_status(exc: OptimizerError) -> tuple[int, str, dict[str, Any] | None]:
    if isinstance(exc, OptimizationRunningError):
        return 409, "OPTIMIZATION_RUNNING", {"running_session_id": exc.running_session_id}
    if isinstance(exc, (BillingPeriodNotFoundError, InstanceNotFoundError, SessionNotFoundError)):
        return 404, "NOT_FOUND", None
    if isinstance(exc, OptimizationValidationError):
        return 422, exc.code, None
    if isinstance(exc, TransientStoreError):
        return 503, "SERVICE_UNAVAILABLE", None
    return 500, "INTERNAL_ERROR", None


async def optimizer_exception_handler(request: Request, exc: OptimizerError) -> JSONResponse:
    # Map domain errors to stable HTTP codes without leaking internals.
    status_code, code, details = _optimizer_status(exc)
    message = str(exc) if status_code < 500 else "Optimizer unavailable"
    if status_code >= 500:
        logger.warning("optimizer_api_error path=%s error=%s", request.url.path, type(exc).__name__)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_api_error path=%s", request.url.path, exc_info=exc)
    return _plain_or_envelope(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Internal server error",
        plain="Internal Server Error",
    )


def install_error_handlers(app) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(OptimizerError, optimizer_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
