from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from arq import Retry

from rateopt.core.config import get_settings
from rateopt.core.errors import (
    BillingPeriodNotFoundError,
    InstanceNotFoundError,
    InvalidRatePlanError,
    OptimizationRunningError,
    OptimizationValidationError,
    SequenceBatchError,
)
from rateopt.domain.models import Device, OptimizationQueue, OptimizationSession
from rateopt.persistence.db import SessionLocal
from rateopt.persistence.repos import devices as devices_repo
from rateopt.persistence.repos import queues as queues_repo
from rateopt.persistence.repos import sessions as sessions_repo
from rateopt.services.costs.cost_model import CHARGE_TYPES, RatePlanTerms, quantize_money
from rateopt.services.optimization.lifecycle import abort_instance, cost_context_for
from rateopt.services.optimization.progress import PROGRESS_PLANNED, PROGRESS_STARTED, report_progress
from rateopt.services.optimization.queue import (
    OptimizeQueuePayload,
    SequenceBatchPayload,
    enqueue_monitor,
    enqueue_optimize_queue,
    enqueue_plan_instance,
    enqueue_sequence_batch,
)
from rateopt.services.optimizer.pools import baseline_assignments, baseline_total
from rateopt.services.optimizer.profiles import PortalProfile, get_profile
from rateopt.services.optimizer.sequences import SequenceGenerator
from rateopt.services.resilience import is_transient
from rateopt.services.session_gate import try_start_session
from rateopt.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StartedOptimization:
    session_id: int
    session_guid: str
    instance_id: int
    gate_reason: str


@dataclass
class PlanSummary:
    instance_id: int
    groups_planned: int = 0
    groups_skipped: int = 0
    queues_created: int = 0
    continuations: list[SequenceBatchPayload] = field(default_factory=list)


def _group_key(device: Device, group_kind: str) -> str:
    if group_kind == "communication_plan":
        return device.communication_plan or "unassigned"
    return device.optimization_group or "default"


def partition_devices(devices: Iterable[Device], group_kind: str) -> list[tuple[str, list[Device]]]:
    # Stable group order keeps queue ids reproducible across runs.
    buckets: dict[str, list[Device]] = {}
    for device in devices:
        buckets.setdefault(_group_key(device, group_kind), []).append(device)
    return [(name, sorted(buckets[name], key=lambda item: item.id)) for name in sorted(buckets)]


def _generator(profile: PortalProfile, plans, devices) -> SequenceGenerator:
    settings = get_settings()
    type_ids = {device.rate_plan_type_id for device in devices if device.rate_plan_type_id is not None}
    return SequenceGenerator(
        plans,
        limit=settings.rate_plan_limit,
        mode=profile.permutation_mode,
        # Devices without a type can use any plan, so they keep every type in play.
        device_type_ids=None if any(device.rate_plan_type_id is None for device in devices) else type_ids,
    )


def _members_with_plan_type(
    instance_id: int, group_name: str, members: list[Device], plans: list[RatePlanTerms]
) -> list[Device]:
    # Devices whose plan type has no candidate in the group cannot be placed; they keep their plan.
    plan_types = {plan.type_id for plan in plans}
    kept = [device for device in members if device.rate_plan_type_id is None or device.rate_plan_type_id in plan_types]
    if len(kept) != len(members):
        excluded = [device.id for device in members if device.rate_plan_type_id not in plan_types | {None}]
        increment_counter("devices_without_plan_type_total", len(excluded))
        logger.warning(
            "devices_excluded_no_plan_type instance_id=%s group=%s device_ids=%s",
            instance_id,
            group_name,
            ",".join(str(device_id) for device_id in excluded),
        )
    return kept


def _work_item(queue: OptimizationQueue, *, charge_type: str, skip_lower_cost_check: bool) -> OptimizeQueuePayload:
    return OptimizeQueuePayload(
        queue_id=queue.id,
        group_id=queue.group_id,
        time_budget_ms=get_settings().worker_time_budget_ms,
        charge_type=charge_type,
        skip_lower_cost_check=skip_lower_cost_check,
    )


async def start_optimization(
    *,
    tenant_id: str,
    billing_period_id: int,
    portal_type: str,
    charge_type: str | None = None,
    uses_proration: bool = False,
    skip_lower_cost_check: bool = False,
    device_count_expected: int | None = None,
    now: datetime | None = None,
) -> StartedOptimization:
    """Pass the session gate, create the session and instance, then hand off to planning."""
    settings = get_settings()
    resolved_charge_type = charge_type or settings.default_charge_type
    if resolved_charge_type not in CHARGE_TYPES:
        raise OptimizationValidationError(f"Unsupported charge type: {resolved_charge_type}")
    try:
        profile = get_profile(portal_type)
    except ValueError as exc:
        raise OptimizationValidationError(str(exc)) from exc

    async with SessionLocal() as session:
        period = await sessions_repo.get_billing_period(session, tenant_id, billing_period_id)
        if period is None:
            raise BillingPeriodNotFoundError(f"Billing period {billing_period_id} not found")
        decision = await try_start_session(session, tenant_id=tenant_id, billing_period=period, now=now)
        if not decision.allow:
            raise OptimizationRunningError(
                "Optimization already running for tenant",
                running_session_id=decision.running_session_id,
            )
        if device_count_expected is None:
            device_count_expected = len(await devices_repo.list_period_devices(session, tenant_id, period.id))
        opt_session = await sessions_repo.create_session(
            session,
            guid=uuid.uuid4().hex,
            tenant_id=tenant_id,
            billing_period_id=period.id,
        )
        instance = await sessions_repo.create_instance(
            session,
            session_id=opt_session.id,
            tenant_id=tenant_id,
            portal_type=profile.portal_type,
            billing_period=period,
            uses_proration=uses_proration,
            charge_type=resolved_charge_type,
            skip_lower_cost_check=skip_lower_cost_check,
            device_count_expected=device_count_expected,
        )
        await session.commit()
        started = StartedOptimization(
            session_id=opt_session.id,
            session_guid=opt_session.guid,
            instance_id=instance.id,
            gate_reason=decision.reason,
        )

    increment_counter("optimization_sessions_started_total")
    logger.info(
        "optimization_started tenant_id=%s session_id=%s instance_id=%s portal=%s gate=%s",
        tenant_id,
        started.session_id,
        started.instance_id,
        profile.portal_type,
        decision.reason,
    )
    await report_progress(
        session_id=started.session_id,
        session_guid=started.session_guid,
        device_count=device_count_expected,
        percent=PROGRESS_STARTED,
        message="Optimization started",
    )
    await enqueue_plan_instance(started.instance_id)
    return started


@dataclass
class _PlannedInstance:
    summary: PlanSummary
    work: list[OptimizeQueuePayload]
    opt_session: OptimizationSession | None
    device_count: int


async def _plan_groups(instance_id: int) -> _PlannedInstance | None:
    settings = get_settings()
    summary = PlanSummary(instance_id=instance_id)
    work: list[OptimizeQueuePayload] = []
    async with SessionLocal() as session:
        instance = await sessions_repo.get_instance(session, instance_id)
        if instance is None:
            raise InstanceNotFoundError(f"Instance {instance_id} not found")
        # Redelivered planning jobs lose this race and stop here.
        claimed = await sessions_repo.transition_instance(
            session, instance_id, from_statuses=("created",), status="processing"
        )
        if not claimed:
            increment_counter("plan_instance_duplicate_skipped_total")
            logger.info("plan_instance_skipped instance_id=%s status=%s", instance_id, instance.status)
            return None
        profile = get_profile(instance.portal_type)
        context = cost_context_for(instance)
        opt_session = await sessions_repo.get_session_row(session, instance.session_id)
        devices = await devices_repo.list_period_devices(session, instance.tenant_id, instance.billing_period_id)
        if len(devices) != instance.device_count_expected:
            increment_counter("device_count_mismatch_total")
            logger.warning(
                "device_count_mismatch instance_id=%s expected=%s actual=%s",
                instance_id,
                instance.device_count_expected,
                len(devices),
            )
        instance.device_count_actual = len(devices)
        current_plan_ids = sorted({d.current_rate_plan_id for d in devices if d.current_rate_plan_id is not None})
        current_plans = {
            row.id: devices_repo.to_terms(row)
            for row in await devices_repo.list_plans_by_ids(session, current_plan_ids)
        }
        try:
            for name, members in partition_devices(devices, profile.group_kind):
                plan_rows = await devices_repo.list_candidate_plans(
                    session, instance.tenant_id, group_kind=profile.group_kind, group_name=name
                )
                terms = [devices_repo.to_terms(row) for row in plan_rows]
                invalid = [plan.id for plan in terms if not plan.has_valid_overage()]
                if invalid and settings.abort_on_invalid_rate_plans:
                    raise InvalidRatePlanError(
                        f"Group {name} has rate plans with invalid overage economics: {invalid}"
                    )
                eligible = [plan for plan in terms if plan.has_valid_overage()]
                if profile.type_partitioned:
                    members = _members_with_plan_type(instance_id, name, members, eligible)
                usages = [devices_repo.to_usage(device) for device in members]
                baseline = baseline_assignments(usages, current_plans, context)
                group = await queues_repo.create_group(
                    session,
                    instance_id=instance_id,
                    kind=profile.group_kind,
                    name=name,
                    device_count=len(members),
                    baseline_cost=quantize_money(baseline_total(baseline)) if baseline is not None else None,
                )
                await devices_repo.attach_group_members(
                    session,
                    group.id,
                    device_ids=[device.id for device in members],
                    rate_plan_ids=[plan.id for plan in eligible],
                )
                if len(members) <= 1:
                    # A lone device cannot share a pool; it keeps its current plan.
                    group.status = "skipped"
                    summary.groups_skipped += 1
                    continue
                generator = _generator(profile, eligible, members)
                group.sequence_count_expected = generator.count()
                first = generator.batch(0, settings.sequence_batch_limit)
                queues = await queues_repo.add_sequences_with_queues(
                    session,
                    instance_id=instance_id,
                    group_id=group.id,
                    start_order=0,
                    sequences=first,
                )
                group.sequences_persisted = len(first)
                summary.groups_planned += 1
                summary.queues_created += len(queues)
                work.extend(
                    _work_item(
                        queue,
                        charge_type=instance.charge_type,
                        skip_lower_cost_check=instance.skip_lower_cost_check,
                    )
                    for queue in queues
                )
                if group.sequence_count_expected > len(first):
                    summary.continuations.append(
                        SequenceBatchPayload(instance_id=instance_id, group_id=group.id, offset=len(first))
                    )
        except OptimizationValidationError as exc:
            await session.rollback()
            await abort_instance(instance_id, str(exc))
            return None
        await session.commit()
    return _PlannedInstance(summary=summary, work=work, opt_session=opt_session, device_count=len(devices))


async def _dispatch_planned(instance_id: int, planned: _PlannedInstance) -> None:
    settings = get_settings()
    summary = planned.summary
    opt_session = planned.opt_session
    logger.info(
        "plan_instance_done instance_id=%s groups=%s skipped=%s queues=%s continuations=%s",
        instance_id,
        summary.groups_planned,
        summary.groups_skipped,
        summary.queues_created,
        len(summary.continuations),
    )
    if opt_session is not None:
        await report_progress(
            session_id=opt_session.id,
            session_guid=opt_session.guid,
            device_count=planned.device_count,
            percent=PROGRESS_PLANNED,
            message=f"Dispatched {summary.queues_created} queues",
        )
    for item in planned.work:
        await enqueue_optimize_queue(item)
    for continuation in summary.continuations:
        await enqueue_sequence_batch(continuation)
    await enqueue_monitor(instance_id, attempt=0, defer_s=settings.monitor_backoff_base_s)


async def plan_instance(instance_id: int, *, attempt: int = 1) -> PlanSummary | None:
    """Split devices into groups, persist the first sequence batch per group, and dispatch queues."""
    settings = get_settings()
    try:
        planned = await _plan_groups(instance_id)
    except InstanceNotFoundError:
        raise
    except Exception as exc:  # noqa: BLE001 - classify before deciding to retry
        # Nothing was committed, so the instance is still claimable by a redelivery.
        if is_transient(exc) and attempt < settings.worker_max_tries:
            logger.warning("plan_instance_transient_failure instance_id=%s attempt=%s", instance_id, attempt, exc_info=exc)
            raise Retry(defer=settings.store_retry_backoff_ms / 1000.0) from exc
        increment_counter("plan_instance_failures_total")
        logger.exception("plan_instance_failed instance_id=%s attempt=%s", instance_id, attempt)
        await abort_instance(instance_id, "Planning failed; check worker logs")
        return None
    if planned is None:
        return None
    try:
        await _dispatch_planned(instance_id, planned)
    except Exception:  # noqa: BLE001 - groups are committed, so a redelivery would skip them
        increment_counter("plan_instance_failures_total")
        logger.exception("plan_dispatch_failed instance_id=%s", instance_id)
        await abort_instance(instance_id, "Dispatching planned queues failed; check worker logs")
        return None
    return planned.summary


async def persist_sequence_batch(payload: SequenceBatchPayload) -> int:
    """Persist the next slice of a group's sequences; returns the number of queues created."""
    settings = get_settings()
    async with SessionLocal() as session:
        group = await queues_repo.get_group(session, payload.group_id)
        instance = await sessions_repo.get_instance(session, payload.instance_id)
        if group is None or instance is None or group.instance_id != instance.id:
            raise SequenceBatchError(f"Sequence batch targets unknown group {payload.group_id}")
        if instance.status != "processing":
            logger.info("sequence_batch_skipped group_id=%s status=%s", group.id, instance.status)
            return 0
        if payload.offset < group.sequences_persisted:
            increment_counter("sequence_batch_duplicate_skipped_total")
            return 0
        if payload.offset != group.sequences_persisted:
            raise SequenceBatchError(
                f"Sequence batch offset {payload.offset} does not follow {group.sequences_persisted}"
            )
        profile = get_profile(instance.portal_type)
        plans = [devices_repo.to_terms(row) for row in await devices_repo.list_group_plans(session, group.id)]
        members = await devices_repo.list_group_devices(session, group.id)
        generator = _generator(profile, plans, members)
        if generator.count() != group.sequence_count_expected:
            raise SequenceBatchError(f"Group {group.id} sequence count changed since planning")
        batch = generator.batch(payload.offset, settings.sequence_batch_limit)
        queues = await queues_repo.add_sequences_with_queues(
            session,
            instance_id=instance.id,
            group_id=group.id,
            start_order=payload.offset,
            sequences=batch,
        )
        advanced = await queues_repo.advance_sequence_cursor(
            session, group.id, expected=payload.offset, persisted=payload.offset + len(batch)
        )
        if not advanced:
            await session.rollback()
            increment_counter("sequence_batch_duplicate_skipped_total")
            return 0
        await session.commit()
        next_offset = payload.offset + len(batch)
        expected = group.sequence_count_expected
        work = [
            _work_item(queue, charge_type=instance.charge_type, skip_lower_cost_check=instance.skip_lower_cost_check)
            for queue in queues
        ]

    logger.info(
        "sequence_batch_persisted group_id=%s offset=%s count=%s expected=%s",
        payload.group_id,
        payload.offset,
        len(work),
        expected,
    )
    for item in work:
        await enqueue_optimize_queue(item)
    if next_offset < expected:
        await enqueue_sequence_batch(payload.model_copy(update={"offset": next_offset}))
    return len(work)
