from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from rateopt.core.errors import OptimizationValidationError
from rateopt.services.optimization.dispatcher import process_work_item
from rateopt.services.optimization.lifecycle import abort_instance
from rateopt.services.optimization.monitor import run_monitor
from rateopt.services.optimization.planner import persist_sequence_batch, plan_instance
from rateopt.services.optimization.queue import (
    MonitorPayload,
    OptimizeQueuePayload,
    PlanInstancePayload,
    SequenceBatchPayload,
)


logger = logging.getLogger(__name__)


# Shared by the arq worker and inline mode so both execute identical code paths.
async def handle_plan_instance(body: dict[str, Any], *, attempt: int) -> int:
    payload = PlanInstancePayload.model_validate(body)
    summary = await plan_instance(payload.instance_id, attempt=attempt)
    return summary.queues_created if summary is not None else 0


async def handle_sequence_batch(body: dict[str, Any], *, attempt: int) -> int:
    payload = SequenceBatchPayload.model_validate(body)
    try:
        return await persist_sequence_batch(payload)
    except OptimizationValidationError as exc:
        await abort_instance(payload.instance_id, str(exc))
        return 0


async def handle_optimize_queue(body: dict[str, Any], *, attempt: int) -> str:
    payload = OptimizeQueuePayload.model_validate(body)
    # Re-enqueued retries get a fresh job id, so the payload carries the attempt count.
    result = await process_work_item(payload, attempt=max(attempt, payload.attempt))
    return result.outcome


async def handle_monitor(body: dict[str, Any], *, attempt: int) -> str:
    payload = MonitorPayload.model_validate(body)
    result = await run_monitor(payload.instance_id)
    return result.state


JOB_HANDLERS: dict[str, Callable[..., Awaitable[Any]]] = {
    "plan_instance": handle_plan_instance,
    "persist_sequence_batch": handle_sequence_batch,
    "optimize_queue": handle_optimize_queue,
    "monitor_instance": handle_monitor,
}
