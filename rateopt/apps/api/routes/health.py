from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from rateopt.apps.api.response import success_response
from rateopt.services.optimization.queue import get_queue_depth, get_worker_heartbeat
from rateopt.services.telemetry import counters_snapshot


router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    queue_depth: int | None = None
    worker_heartbeat: str | None = None
    counters: dict[str, int] = {}


@router.get("/health")
async def health(request: Request) -> dict:
    # Queue depth and heartbeat are best-effort; Redis outages never fail the check.
    heartbeat = await get_worker_heartbeat()
    payload = HealthResponse(
        status="ok",
        queue_depth=await get_queue_depth(),
        worker_heartbeat=heartbeat.isoformat() if heartbeat else None,
        counters=counters_snapshot(),
    )
    return success_response(request=request, data=payload)
