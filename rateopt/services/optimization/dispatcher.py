from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from arq import Retry

from rateopt.core.config import get_settings
from rateopt.core.errors import (
    CheckpointSchemaError,
    OptimizationValidationError,
    QueueNotFoundError,
    TransientStoreError,
    WorkItemMismatchError,
)
from rateopt.persistence.db import SessionLocal
from rateopt.persistence.repos import devices as devices_repo
from rateopt.persistence.repos import queues as queues_repo
from rateopt.persistence.repos import sessions as sessions_repo
from rateopt.services.costs.cost_model import quantize_money
from rateopt.services.optimization.lifecycle import cost_context_for
from rateopt.services.optimization.queue import OptimizeQueuePayload, enqueue_optimize_queue
from rateopt.services.optimizer.assigner import AssignmentOutcome, RatePoolAssigner
from rateopt.services.optimizer.checkpoint import (
    CheckpointState,
    CheckpointStore,
    checkpoint_key,
    decode_checkpoint,
    encode_checkpoint,
    get_checkpoint_store,
)
from rateopt.services.optimizer.pools import BaselineLine, baseline_assignments, baseline_total
from rateopt.services.optimizer.profiles import get_profile
from rateopt.services.resilience import is_transient, retry_async
from rateopt.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchResult:
    # outcome: completed, no_improvement, continued, failed, skipped_terminal, skipped_claimed, dropped
    queue_id: int
    outcome: str
    total_cost: Decimal | None = None
    version: int | None = None


@dataclass
class _QueueWork:
    instance_id: int
    group_id: int
    sequence_id: int
    assigner: RatePoolAssigner
    baseline: list[BaselineLine] | None
    device_count: int


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _load_work(
    payload: OptimizeQueuePayload,
    *,
    time_source: Callable[[], float],
) -> _QueueWork:
    # Device and plan reads are shared, read-only inputs for every queue in the group.
    async with SessionLocal() as session:
        queue = await queues_repo.get_queue(session, payload.queue_id)
        if queue is None:
            raise QueueNotFoundError(f"Queue {payload.queue_id} not found")
        instance = await sessions_repo.get_instance(session, queue.instance_id)
        sequence = await queues_repo.get_sequence(session, queue.sequence_id)
        if instance is None or sequence is None:
            raise QueueNotFoundError(f"Queue {payload.queue_id} lost its instance or sequence")
        profile = get_profile(instance.portal_type)
        context = cost_context_for(instance, charge_type=payload.charge_type)
        devices = [devices_repo.to_usage(row) for row in await devices_repo.list_group_devices(session, queue.group_id)]
        group_plans = await devices_repo.list_group_plans(session, queue.group_id)
        current_ids = sorted({d.current_rate_plan_id for d in devices if d.current_rate_plan_id is not None})
        current_plans = await devices_repo.list_plans_by_ids(session, current_ids)
    plans_by_id = {row.id: devices_repo.to_terms(row) for row in group_plans}
    current_by_id = {row.id: devices_repo.to_terms(row) for row in current_plans}
    assigner = RatePoolAssigner(
        queue_id=queue.id,
        sequence_id=sequence.id,
        rate_plan_ids=list(sequence.rate_plan_ids),
        plans_by_id=plans_by_id,
        devices=devices,
        context=context,
        strategies=profile.strategies,
        type_partitioned=profile.type_partitioned,
        time_source=time_source,
    )
    return _QueueWork(
        instance_id=instance.id,
        group_id=queue.group_id,
        sequence_id=sequence.id,
        assigner=assigner,
        baseline=baseline_assignments(devices, current_by_id, context),
        device_count=len(devices),
    )


async def _load_checkpoint(store: CheckpointStore, key: str, assigner: RatePoolAssigner) -> CheckpointState | None:
    blob = await retry_async(lambda: store.load(key), operation="checkpoint_load")
    if blob is None:
        # Lost or expired checkpoints restart the queue; the result is the same, only slower.
        increment_counter("checkpoint_missing_total")
        logger.warning("checkpoint_missing queue_id=%s key=%s", assigner.queue_id, key)
        return None
    try:
        state = decode_checkpoint(blob)
    except CheckpointSchemaError as exc:
        increment_counter("checkpoint_discarded_total")
        logger.warning("checkpoint_discarded queue_id=%s reason=%s", assigner.queue_id, exc)
        return None
    if state.fingerprint != assigner.fingerprint or state.queue_id != assigner.queue_id:
        increment_counter("checkpoint_discarded_total")
        logger.warning("checkpoint_discarded queue_id=%s reason=inputs_changed", assigner.queue_id)
        return None
    return state


def _remaining_work(state: CheckpointState, *, device_count: int, strategy_count: int) -> int:
    # Device placements still owed, across the current and all later strategies.
    in_strategy = len(state.remaining_device_ids) if state.remaining_device_ids is not None else device_count
    later = max(0, strategy_count - state.strategy_index - 1)
    return in_strategy + later * device_count


async def _mark_failed(queue_id: int, *, version: int, message: str) -> DispatchResult:
    async with SessionLocal() as session:
        moved = await queues_repo.finish_queue(
            session,
            queue_id,
            expected_version=version,
            status="error",
            completed_at=_utc_now(),
            error_message=message,
        )
        await session.commit()
    increment_counter("queue_failures_total")
    logger.warning("queue_failed queue_id=%s reason=%s", queue_id, message)
    return DispatchResult(queue_id=queue_id, outcome="failed" if moved else "skipped_claimed", version=version)


async def _record_result(
    payload: OptimizeQueuePayload,
    work: _QueueWork,
    outcome: AssignmentOutcome,
    *,
    version: int,
) -> DispatchResult:
    total = outcome.total_cost if outcome.total_cost is not None else Decimal("0")
    rows = [(item.device_id, item.rate_plan_id, quantize_money(item.cost)) for item in outcome.assignments]
    strategy = outcome.strategy_used
    no_improvement = False
    # Never report a regression: keep current plans when optimization does not beat them.
    if work.baseline is not None and not payload.skip_lower_cost_check:
        baseline_cost = baseline_total(work.baseline)
        if total >= baseline_cost:
            no_improvement = True
            total = baseline_cost
            strategy = "baseline"
            # Devices with no current plan stay listed with a null plan so the group is complete.
            rows = [(line.device_id, line.rate_plan_id, quantize_money(line.cost)) for line in work.baseline]
    async with SessionLocal() as session:
        await queues_repo.replace_assignments(session, payload.queue_id, rows)
        moved = await queues_repo.finish_queue(
            session,
            payload.queue_id,
            expected_version=version,
            status="complete",
            completed_at=_utc_now(),
            total_cost=quantize_money(total),
            strategy_used=strategy,
            no_improvement=no_improvement,
        )
        if not moved:
            await session.rollback()
            increment_counter("queue_claim_conflicts_total")
            return DispatchResult(queue_id=payload.queue_id, outcome="skipped_claimed", version=version)
        await session.commit()
    increment_counter("queues_completed_total")
    logger.info(
        "queue_complete queue_id=%s total_cost=%s strategy=%s no_improvement=%s",
        payload.queue_id,
        quantize_money(total),
        strategy,
        no_improvement,
    )
    return DispatchResult(
        queue_id=payload.queue_id,
        outcome="no_improvement" if no_improvement else "completed",
        total_cost=quantize_money(total),
        version=version + 1,
    )


async def _claim(payload: OptimizeQueuePayload, *, attempt: int) -> DispatchResult | int:
    settings = get_settings()
    try:
        async with SessionLocal() as session:
            queue = await queues_repo.get_queue(session, payload.queue_id)
            if queue is None:
                raise QueueNotFoundError(f"Queue {payload.queue_id} not found")
            if queue.group_id != payload.group_id:
                raise WorkItemMismatchError(
                    f"Queue {payload.queue_id} belongs to group {queue.group_id}, not {payload.group_id}"
                )
            if queue.status in queues_repo.TERMINAL_QUEUE_STATUSES:
                # Redelivery of a finished queue is expected under at-least-once delivery.
                increment_counter("queue_duplicate_skipped_total")
                return DispatchResult(queue_id=payload.queue_id, outcome="skipped_terminal")
            version = await queues_repo.claim_queue(
                session,
                payload.queue_id,
                resume=payload.resume,
                expected_version=payload.expected_version,
                claimed_at=_utc_now(),
            )
            if version is None:
                # Rollback expires loaded rows, so only payload fields are safe to read after it.
                await session.rollback()
                increment_counter("queue_claim_conflicts_total")
                logger.info("queue_claim_skipped queue_id=%s resume=%s", payload.queue_id, payload.resume)
                return DispatchResult(queue_id=payload.queue_id, outcome="skipped_claimed")
            await session.commit()
            return version
    except (QueueNotFoundError, WorkItemMismatchError) as exc:
        logger.warning("work_item_dropped queue_id=%s reason=%s", payload.queue_id, exc)
        return DispatchResult(queue_id=payload.queue_id, outcome="dropped")
    except Exception as exc:  # noqa: BLE001 - classify before deciding to retry
        if is_transient(exc) and attempt < settings.worker_max_tries:
            # Nothing is claimed yet, so a plain redelivery is safe.
            raise Retry(defer=settings.store_retry_backoff_ms / 1000.0) from exc
        raise


async def process_work_item(
    payload: OptimizeQueuePayload,
    *,
    attempt: int = 1,
    time_source: Callable[[], float] = time.monotonic,
) -> DispatchResult:
    """Run one invocation of the assigner for a queue.

    The queue is claimed with a conditional update first, so a second copy of
    the same message finds the version already moved and does nothing.
    """
    settings = get_settings()
    claimed = await _claim(payload, attempt=attempt)
    if isinstance(claimed, DispatchResult):
        return claimed
    version = claimed
    store: CheckpointStore | None = None
    key: str | None = None
    try:
        work = await _load_work(payload, time_source=time_source)
        store = get_checkpoint_store()
        key = checkpoint_key(
            instance_id=work.instance_id,
            group_id=work.group_id,
            queue_id=payload.queue_id,
            sequence_id=work.sequence_id,
        )
        resume_state = await _load_checkpoint(store, key, work.assigner) if payload.resume else None
        # Assignment is CPU-bound; keep the event loop free for heartbeats.
        outcome = await asyncio.to_thread(
            work.assigner.run,
            budget_ms=payload.time_budget_ms,
            resume_from=resume_state,
        )
        if not outcome.complete and outcome.checkpoint is not None:
            blob = encode_checkpoint(outcome.checkpoint)
            try:
                await retry_async(
                    lambda: store.save(key, blob, queue_id=payload.queue_id),
                    operation="checkpoint_save",
                )
            except Exception as exc:  # noqa: BLE001 - classify store failures below
                if not is_transient(exc):
                    raise
                remaining = _remaining_work(
                    outcome.checkpoint,
                    device_count=work.device_count,
                    strategy_count=len(work.assigner.strategies),
                )
                if (
                    settings.checkpoint_fallback_mode.lower() == "sync"
                    and remaining <= settings.checkpoint_fallback_max_devices
                ):
                    increment_counter("checkpoint_sync_fallbacks_total")
                    logger.warning(
                        "checkpoint_unavailable_sync_fallback queue_id=%s remaining=%s",
                        payload.queue_id,
                        remaining,
                    )
                    outcome = await asyncio.to_thread(
                        work.assigner.run, budget_ms=None, resume_from=outcome.checkpoint
                    )
                else:
                    return await _mark_failed(
                        payload.queue_id, version=version, message="Checkpoint store unavailable"
                    )
            else:
                increment_counter("queue_continuations_total")
                await enqueue_optimize_queue(
                    payload.model_copy(update={"resume": True, "expected_version": version, "attempt": 1})
                )
                return DispatchResult(queue_id=payload.queue_id, outcome="continued", version=version)
        result = await _record_result(payload, work, outcome, version=version)
    except OptimizationValidationError as exc:
        # Deterministic input problems are never retried.
        return await _mark_failed(payload.queue_id, version=version, message=str(exc))
    except Exception as exc:  # noqa: BLE001 - surface a concise failure reason
        if is_transient(exc) and attempt < settings.worker_max_tries:
            # The claim is held, so retry through the resume path at the claimed version.
            increment_counter("queue_transient_retries_total")
            logger.warning("queue_transient_failure queue_id=%s attempt=%s", payload.queue_id, attempt, exc_info=exc)
            await enqueue_optimize_queue(
                payload.model_copy(update={"resume": True, "expected_version": version, "attempt": attempt + 1})
            )
            return DispatchResult(queue_id=payload.queue_id, outcome="continued", version=version)
        logger.exception("queue_processing_failed queue_id=%s", payload.queue_id)
        reason = "Transient store failures exhausted retries" if isinstance(exc, TransientStoreError) else (
            "Optimization failed; check worker logs"
        )
        return await _mark_failed(payload.queue_id, version=version, message=reason)
    if store is not None and key is not None and payload.resume:
        try:
            await store.delete(key)
        except TransientStoreError as exc:
            # TTL reclaims the blob; the queue is already complete.
            logger.warning("checkpoint_delete_failed queue_id=%s", payload.queue_id, exc_info=exc)
    return result
