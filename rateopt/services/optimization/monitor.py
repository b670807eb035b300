from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from rateopt.core.config import get_settings
from rateopt.core.errors import InstanceNotFoundError
from rateopt.domain.models import DeviceGroup, OptimizationQueue
from rateopt.persistence.db import SessionLocal
from rateopt.persistence.repos import devices as devices_repo
from rateopt.persistence.repos import queues as queues_repo
from rateopt.persistence.repos import sessions as sessions_repo
from rateopt.services.billing import has_time_for_rate_plan_updates
from rateopt.services.optimization.lifecycle import notify_instance_error
from rateopt.services.optimization.progress import (
    PROGRESS_FINALIZED,
    PROGRESS_QUEUES_COMPLETE,
    PROGRESS_WINNERS_SELECTED,
    report_progress,
)
from rateopt.services.optimization.queue import (
    OptimizeQueuePayload,
    enqueue_monitor,
    enqueue_optimize_queue,
    get_queue_depth,
)
from rateopt.services.resilience import backoff_delay_s
from rateopt.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass
class MonitorResult:
    instance_id: int
    state: str
    changed: bool
    attempts: int = 0
    delay_s: int | None = None
    winners: dict[int, int] = field(default_factory=dict)
    failed_groups: list[int] = field(default_factory=list)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def monitor_delay_s(attempt: int, queue_depth: int | None) -> int:
    # A busy optimizer queue means completion is far off; wait the longest interval.
    settings = get_settings()
    if queue_depth is not None and queue_depth > settings.monitor_busy_queue_depth:
        return settings.monitor_backoff_max_s
    return int(
        backoff_delay_s(
            attempt,
            base_s=settings.monitor_backoff_base_s,
            max_s=settings.monitor_backoff_max_s,
        )
    )


def pick_winner(queues: list[OptimizationQueue]) -> OptimizationQueue | None:
    # Minimum total cost among complete queues; lowest queue id breaks ties.
    complete = [queue for queue in queues if queue.status == "complete" and queue.total_cost is not None]
    if not complete:
        return None
    return min(complete, key=lambda queue: (Decimal(str(queue.total_cost)), queue.id))


async def select_group_winner(session: AsyncSession, group: DeviceGroup) -> OptimizationQueue | None:
    """Pick the group's winning queue and delete every other queue's assignments.

    Safe to repeat: a second pass picks the same winner and finds nothing left to delete.
    """
    queues = await queues_repo.list_group_queues(session, group.id)
    winner = pick_winner(queues)
    deleted = await queues_repo.delete_losing_assignments(
        session, group.id, winner_queue_id=winner.id if winner is not None else None
    )
    group.winning_queue_id = winner.id if winner is not None else None
    group.status = "finalized" if winner is not None else "error"
    logger.info(
        "group_winner_selected group_id=%s winner_queue_id=%s purged_rows=%s",
        group.id,
        group.winning_queue_id,
        deleted,
    )
    return winner


async def _count_plan_changes(session: AsyncSession, winners: dict[int, int]) -> int:
    changes = 0
    for group_id, queue_id in winners.items():
        current = {
            device.id: device.current_rate_plan_id
            for device in await devices_repo.list_group_devices(session, group_id)
        }
        for row in await queues_repo.list_assignments(session, queue_id):
            if current.get(row.device_id) != row.rate_plan_id:
                changes += 1
    return changes


async def run_monitor(instance_id: int, *, now: datetime | None = None) -> MonitorResult:
    """One poll of the completion state machine for an instance.

    waiting_for_queues either reschedules itself with backoff, times out after
    the attempt ceiling, or moves through all_complete to finalized in one
    transaction. Any other state means a previous delivery already finished.
    """
    settings = get_settings()
    current_time = now or _utc_now()
    pending_work: list[OptimizeQueuePayload] = []
    async with SessionLocal() as session:
        instance = await sessions_repo.get_instance(session, instance_id)
        if instance is None:
            raise InstanceNotFoundError(f"Instance {instance_id} not found")
        attempts = instance.monitor_attempts
        if instance.monitor_state != "waiting_for_queues" or instance.finalized_at is not None:
            increment_counter("monitor_duplicate_skipped_total")
            return MonitorResult(instance_id, state=instance.monitor_state, changed=False, attempts=attempts)
        groups = await queues_repo.list_groups(session, instance_id)
        counts = await queues_repo.queue_status_counts(session, instance_id)
        unfinished = sum(count for status, count in counts.items() if status not in queues_repo.TERMINAL_QUEUE_STATUSES)
        unsequenced = [
            group.id
            for group in groups
            if group.status == "planned" and group.sequences_persisted < group.sequence_count_expected
        ]
        opt_session = await sessions_repo.get_session_row(session, instance.session_id)
        device_count = instance.device_count_actual or instance.device_count_expected

        if unfinished or unsequenced:
            next_attempt = attempts + 1
            if next_attempt >= settings.monitor_max_attempts:
                message = (
                    f"Optimization timed out after {next_attempt} monitor attempts "
                    f"({unfinished} queues unfinished)"
                )
                moved = await sessions_repo.transition_monitor_state(
                    session,
                    instance_id,
                    from_state="waiting_for_queues",
                    expected_attempts=attempts,
                    monitor_state="timed_out",
                    monitor_attempts=next_attempt,
                    status="complete_with_errors",
                    error_message=message,
                )
                if not moved:
                    await session.rollback()
                    return MonitorResult(instance_id, state="waiting_for_queues", changed=False, attempts=attempts)
                # No winner selection on incomplete data; open queues are ended instead.
                await queues_repo.fail_unfinished_queues(
                    session, instance_id, message="Monitor timed out", completed_at=current_time
                )
                await session.commit()
                increment_counter("monitor_timeouts_total")
                logger.error("monitor_timed_out instance_id=%s attempts=%s", instance_id, next_attempt)
                await notify_instance_error(instance_id, message)
                return MonitorResult(instance_id, state="timed_out", changed=True, attempts=next_attempt)

            moved = await sessions_repo.transition_monitor_state(
                session,
                instance_id,
                from_state="waiting_for_queues",
                expected_attempts=attempts,
                monitor_attempts=next_attempt,
            )
            if not moved:
                await session.rollback()
                return MonitorResult(instance_id, state="waiting_for_queues", changed=False, attempts=attempts)
            # Re-dispatch queues that were never claimed; claims make duplicates harmless.
            for queue in await queues_repo.list_pending_queues(session, instance_id):
                pending_work.append(
                    OptimizeQueuePayload(
                        queue_id=queue.id,
                        group_id=queue.group_id,
                        time_budget_ms=settings.worker_time_budget_ms,
                        charge_type=instance.charge_type,
                        skip_lower_cost_check=instance.skip_lower_cost_check,
                    )
                )
            # A worker that died mid-claim leaves the queue processing; resume it from its checkpoint.
            stalled_before = current_time.astimezone(timezone.utc) - timedelta(seconds=settings.worker_job_timeout_s)
            for queue in await queues_repo.list_stalled_queues(session, instance_id, claimed_before=stalled_before):
                increment_counter("queue_stalled_resumed_total")
                logger.warning(
                    "queue_stalled_resume queue_id=%s version=%s claimed_at=%s",
                    queue.id,
                    queue.version,
                    queue.claimed_at,
                )
                pending_work.append(
                    OptimizeQueuePayload(
                        queue_id=queue.id,
                        group_id=queue.group_id,
                        time_budget_ms=settings.worker_time_budget_ms,
                        resume=True,
                        expected_version=queue.version,
                        charge_type=instance.charge_type,
                        skip_lower_cost_check=instance.skip_lower_cost_check,
                    )
                )
            await session.commit()
            depth = await get_queue_depth()
            delay = monitor_delay_s(next_attempt, depth)
            logger.info(
                "monitor_waiting instance_id=%s attempt=%s unfinished=%s unsequenced=%s delay_s=%s",
                instance_id,
                next_attempt,
                unfinished,
                len(unsequenced),
                delay,
            )
            for item in pending_work:
                await enqueue_optimize_queue(item)
            await enqueue_monitor(instance_id, attempt=next_attempt, defer_s=delay)
            return MonitorResult(
                instance_id, state="waiting_for_queues", changed=True, attempts=next_attempt, delay_s=delay
            )

        # all_complete: winner selection and finalization commit together.
        moved = await sessions_repo.transition_monitor_state(
            session,
            instance_id,
            from_state="waiting_for_queues",
            expected_attempts=attempts,
            monitor_state="all_complete",
        )
        if not moved:
            await session.rollback()
            return MonitorResult(instance_id, state="waiting_for_queues", changed=False, attempts=attempts)
        winners: dict[int, int] = {}
        failed_groups: list[int] = []
        for group in groups:
            if group.status != "planned":
                continue
            winner = await select_group_winner(session, group)
            if winner is None:
                failed_groups.append(group.id)
            else:
                winners[group.id] = winner.id
        changes = await _count_plan_changes(session, winners)
        update_go = has_time_for_rate_plan_updates(
            changes,
            instance.period_end,
            instance.time_zone,
            devices_per_minute=settings.rate_plan_update_devices_per_minute,
            batch_size=settings.rate_plan_update_batch_size,
            buffer_minutes=settings.rate_plan_update_buffer_minutes,
            now=current_time,
        )
        final_status = "complete_with_errors" if failed_groups else "completed"
        error_message = (
            f"No complete queue for groups {failed_groups}" if failed_groups else None
        )
        await sessions_repo.transition_monitor_state(
            session,
            instance_id,
            from_state="all_complete",
            expected_attempts=attempts,
            monitor_state="finalized",
            status=final_status,
            finalized_at=current_time,
            rate_plan_update_go=update_go,
            error_message=error_message,
        )
        await session.commit()

    increment_counter("instances_finalized_total")
    logger.info(
        "instance_finalized instance_id=%s status=%s winners=%s failed_groups=%s plan_changes=%s update_go=%s",
        instance_id,
        final_status,
        len(winners),
        len(failed_groups),
        changes,
        update_go,
    )
    if opt_session is not None:
        await report_progress(
            session_id=opt_session.id,
            session_guid=opt_session.guid,
            device_count=device_count,
            percent=PROGRESS_QUEUES_COMPLETE,
            message="All queues complete",
        )
        await report_progress(
            session_id=opt_session.id,
            session_guid=opt_session.guid,
            device_count=device_count,
            percent=PROGRESS_WINNERS_SELECTED,
            message=f"Selected winners for {len(winners)} groups",
        )
        await report_progress(
            session_id=opt_session.id,
            session_guid=opt_session.guid,
            device_count=device_count,
            percent=PROGRESS_FINALIZED,
            message="Optimization finalized",
        )
    if error_message:
        await notify_instance_error(instance_id, error_message)
    return MonitorResult(
        instance_id,
        state="finalized",
        changed=True,
        attempts=attempts,
        winners=winners,
        failed_groups=failed_groups,
    )
