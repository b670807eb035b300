from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any

from arq import Retry, create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel

from rateopt.core.config import get_settings


logger = logging.getLogger(__name__)

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
# Keep heartbeat key stable for health endpoint lookups.
WORKER_HEARTBEAT_KEY = "rateopt:worker:heartbeat"

# Inline mode runs jobs FIFO in-process; deferred jobs wait until ready work drains.
_inline_ready: deque[tuple[str, dict[str, Any]]] = deque()
_inline_deferred: deque[tuple[str, dict[str, Any]]] = deque()
_inline_draining = False


def _queue_key(queue_name: str) -> str:
    # Use arq's queue naming convention for depth checks.
    return f"arq:queue:{queue_name}"


class PlanInstancePayload(BaseModel):
    instance_id: int


class SequenceBatchPayload(BaseModel):
    # Continuation for groups whose permutations exceed one batch; offset is the resume cursor.
    instance_id: int
    group_id: int
    offset: int


class OptimizeQueuePayload(BaseModel):
    # Inbound work item for one queue; resume messages carry the version they expect.
    queue_id: int
    group_id: int
    time_budget_ms: int
    resume: bool = False
    expected_version: int = 0
    attempt: int = 1
    charge_type: str | None = None
    skip_lower_cost_check: bool = False


class MonitorPayload(BaseModel):
    instance_id: int


def _utc_now() -> datetime:
    # Use UTC timestamps for consistency across API and worker processes.
    return datetime.now(timezone.utc)


def is_inline_mode() -> bool:
    return get_settings().execution_mode.lower() == "inline"


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.optimizer_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def get_queue_depth() -> int | None:
    # Return None to signal Redis unavailability to callers.
    settings = get_settings()
    if is_inline_mode():
        return len(_inline_ready) + len(_inline_deferred)
    try:
        redis = await get_redis_pool()
        depth = await redis.zcard(_queue_key(settings.optimizer_queue_name))
        return int(depth)
    except Exception:  # noqa: BLE001 - callers treat unknown depth as not busy
        return None


async def set_worker_heartbeat(*, timestamp: datetime | None = None) -> None:
    if is_inline_mode():
        # Inline mode does not run a worker, so skip heartbeat updates.
        return
    redis = await get_redis_pool()
    heartbeat_time = timestamp or _utc_now()
    await redis.set(WORKER_HEARTBEAT_KEY, heartbeat_time.isoformat())


async def get_worker_heartbeat() -> datetime | None:
    # Return None when the heartbeat is missing or Redis is unavailable.
    if is_inline_mode():
        return None
    try:
        redis = await get_redis_pool()
        raw_value = await redis.get(WORKER_HEARTBEAT_KEY)
    except Exception:  # noqa: BLE001 - health endpoint handles degraded Redis
        return None
    if not raw_value:
        return None
    value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


async def enqueue_job(
    function: str,
    payload: BaseModel,
    *,
    job_id: str | None = None,
    defer_s: int | None = None,
) -> str | None:
    settings = get_settings()
    body = payload.model_dump()
    if is_inline_mode():
        target = _inline_deferred if defer_s else _inline_ready
        target.append((function, body))
        await _drain_inline()
        return job_id
    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        function,
        body,
        _job_id=job_id,
        _queue_name=settings.optimizer_queue_name,
        _defer_by=defer_s or None,
    )
    # arq returns None when the job id already exists; duplicates are harmless here.
    if job is None:
        logger.info("enqueue_duplicate_job function=%s job_id=%s", function, job_id)
        return job_id
    return job.job_id


async def enqueue_plan_instance(instance_id: int) -> str | None:
    return await enqueue_job(
        "plan_instance",
        PlanInstancePayload(instance_id=instance_id),
        job_id=f"plan:{instance_id}",
    )


async def enqueue_sequence_batch(payload: SequenceBatchPayload) -> str | None:
    return await enqueue_job(
        "persist_sequence_batch",
        payload,
        job_id=f"sequences:{payload.group_id}:{payload.offset}",
    )


async def enqueue_optimize_queue(payload: OptimizeQueuePayload) -> str | None:
    return await enqueue_job(
        "optimize_queue",
        payload,
        job_id=f"optimize:{payload.queue_id}:{payload.expected_version}:{payload.attempt}",
    )


async def enqueue_monitor(instance_id: int, *, attempt: int, defer_s: int | None) -> str | None:
    return await enqueue_job(
        "monitor_instance",
        MonitorPayload(instance_id=instance_id),
        job_id=f"monitor:{instance_id}:{attempt}",
        defer_s=defer_s,
    )


async def _run_inline_job(function: str, body: dict[str, Any], *, max_tries: int) -> None:
    # Inline mode mimics worker retries without requiring Redis.
    from rateopt.services.optimization.handlers import JOB_HANDLERS

    handler = JOB_HANDLERS[function]
    attempt = 1
    while True:
        try:
            await handler(body, attempt=attempt)
            return
        except Retry:
            if attempt >= max_tries:
                logger.error("inline_job_retries_exhausted function=%s", function)
                return
            attempt += 1


async def _drain_inline() -> None:
    # Jobs enqueued by running jobs are appended, never run recursively.
    global _inline_draining
    if _inline_draining:
        return
    _inline_draining = True
    max_tries = get_settings().worker_max_tries
    try:
        while _inline_ready or _inline_deferred:
            function, body = _inline_ready.popleft() if _inline_ready else _inline_deferred.popleft()
            await _run_inline_job(function, body, max_tries=max_tries)
    except Exception:
        _inline_ready.clear()
        _inline_deferred.clear()
        raise
    finally:
        _inline_draining = False


def reset_inline_queue() -> None:
    # Test-only helper to isolate inline job state.
    global _inline_draining
    _inline_ready.clear()
    _inline_deferred.clear()
    _inline_draining = False
