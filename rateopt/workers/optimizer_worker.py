from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from rateopt.core.config import get_settings
from rateopt.core.logging import configure_logging
from rateopt.services.optimization.handlers import (
    handle_monitor,
    handle_optimize_queue,
    handle_plan_instance,
    handle_sequence_batch,
)
from rateopt.services.optimization.queue import set_worker_heartbeat


logger = logging.getLogger(__name__)


async def plan_instance(ctx, payload: dict) -> int:
    # Parse and validate payloads in the worker to enforce schema contracts.
    return await handle_plan_instance(payload, attempt=ctx.get("job_try", 1))


async def persist_sequence_batch(ctx, payload: dict) -> int:
    return await handle_sequence_batch(payload, attempt=ctx.get("job_try", 1))


async def optimize_queue(ctx, payload: dict) -> str:
    return await handle_optimize_queue(payload, attempt=ctx.get("job_try", 1))


async def monitor_instance(ctx, payload: dict) -> str:
    return await handle_monitor(payload, attempt=ctx.get("job_try", 1))


async def _heartbeat_loop() -> None:
    # Emit heartbeats on a fixed interval for ops health reporting.
    settings = get_settings()
    while True:
        try:
            await set_worker_heartbeat()
        except Exception as exc:  # noqa: BLE001 - a missed heartbeat must not kill the worker
            logger.warning("worker_heartbeat_failed", exc_info=exc)
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _startup(ctx) -> None:
    # Start the heartbeat task when the worker boots.
    configure_logging()
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop())
    logger.info("optimizer_worker_started queue=%s", get_settings().optimizer_queue_name)


async def _shutdown(ctx) -> None:
    # Cancel the heartbeat task to avoid dangling coroutines on exit.
    task = ctx.get("heartbeat_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.optimizer_queue_name
    max_tries = settings.worker_max_tries
    job_timeout = settings.worker_job_timeout_s
    functions = [plan_instance, persist_sequence_batch, optimize_queue, monitor_instance]
    on_startup = _startup
    on_shutdown = _shutdown
