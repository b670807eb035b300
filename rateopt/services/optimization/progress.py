from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from rateopt.core.config import get_settings
from rateopt.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Milestones reported to the external monitor over an instance's life.
PROGRESS_STARTED = 0
PROGRESS_PLANNED = 20
PROGRESS_QUEUES_COMPLETE = 30
PROGRESS_WINNERS_SELECTED = 40
PROGRESS_FINALIZED = 50


@dataclass(frozen=True)
class ProgressDeliveryResult:
    # Summarize sink delivery for logs and tests; callers never branch on it.
    sent: bool
    status_code: int | None
    message: str


async def _post(event: str, payload: dict[str, Any]) -> ProgressDeliveryResult:
    settings = get_settings()
    if not settings.progress_sink_url:
        return ProgressDeliveryResult(sent=False, status_code=None, message="Progress sink is not configured")
    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    headers = {"Content-Type": "application/json", "X-Progress-Event": event}
    try:
        async with httpx.AsyncClient(timeout=settings.progress_sink_timeout_ms / 1000.0) as client:
            response = await client.post(settings.progress_sink_url, content=body, headers=headers)
    except httpx.HTTPError as exc:
        # Fire-and-forget: a failing monitor must never stall optimization.
        increment_counter("progress_sink_failures_total")
        logger.warning("progress_sink_send_failed event=%s", event, exc_info=exc)
        return ProgressDeliveryResult(sent=False, status_code=None, message=str(exc))
    if response.status_code >= 400:
        increment_counter("progress_sink_failures_total")
        return ProgressDeliveryResult(
            sent=False,
            status_code=response.status_code,
            message=f"Progress sink responded with status {response.status_code}",
        )
    return ProgressDeliveryResult(sent=True, status_code=response.status_code, message="delivered")


async def report_progress(
    *,
    session_id: int,
    session_guid: str,
    device_count: int,
    percent: int,
    message: str,
) -> ProgressDeliveryResult:
    logger.info(
        "optimization_progress session_id=%s percent=%s device_count=%s message=%s",
        session_id,
        percent,
        device_count,
        message,
    )
    return await _post(
        "progress",
        {
            "session_id": session_id,
            "session_guid": session_guid,
            "device_count": device_count,
            "percent": percent,
            "message": message,
        },
    )


async def report_error(*, session_id: int, error_message: str) -> ProgressDeliveryResult:
    increment_counter("optimization_errors_reported_total")
    logger.error("optimization_error session_id=%s error=%s", session_id, error_message)
    return await _post("error", {"session_id": session_id, "error_message": error_message})
