from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request

from rateopt.apps.api.errors import install_error_handlers
from rateopt.apps.api.routes.health import router as health_router
from rateopt.apps.api.routes.optimizations import router as optimizations_router
from rateopt.core.config import get_settings
from rateopt.core.logging import configure_logging
from rateopt.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Rate Plan Optimizer API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        increment_counter("api_requests_total")
        if response.status_code >= 500:
            increment_counter("api_errors_total")
        logger.info(
            "api_request method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    install_error_handlers(app)
    app.include_router(health_router)
    app.include_router(optimizations_router)
    logger.info("api_started app=%s", get_settings().app_name)
    return app


app = create_app()
