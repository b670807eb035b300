from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from decimal import Decimal

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rateopt.domain.models import (
    DeviceGroup,
    OptimizationQueue,
    QueueAssignment,
    RatePlanSequence,
)


TERMINAL_QUEUE_STATUSES = ("complete", "error")


async def create_group(
    session: AsyncSession,
    *,
    instance_id: int,
    kind: str,
    name: str,
    device_count: int,
    baseline_cost: Decimal | None,
) -> DeviceGroup:
    group = DeviceGroup(
        instance_id=instance_id,
        kind=kind,
        name=name,
        status="planned",
        device_count=device_count,
        baseline_cost=baseline_cost,
        sequence_count_expected=0,
        sequences_persisted=0,
    )
    session.add(group)
    await session.flush()
    return group


async def get_group(session: AsyncSession, group_id: int) -> DeviceGroup | None:
    return await session.get(DeviceGroup, group_id)


async def list_groups(session: AsyncSession, instance_id: int) -> list[DeviceGroup]:
    result = await session.execute(
        select(DeviceGroup).where(DeviceGroup.instance_id == instance_id).order_by(DeviceGroup.id)
    )
    return list(result.scalars().all())


async def add_sequences_with_queues(
    session: AsyncSession,
    *,
    instance_id: int,
    group_id: int,
    start_order: int,
    sequences: Sequence[tuple[int, ...]],
) -> list[OptimizationQueue]:
    # Queue rows are created in bulk alongside the sequences they evaluate.
    rows = [
        RatePlanSequence(group_id=group_id, sequence_order=start_order + offset, rate_plan_ids=list(plan_ids))
        for offset, plan_ids in enumerate(sequences)
    ]
    session.add_all(rows)
    await session.flush()
    queues = [
        OptimizationQueue(
            instance_id=instance_id,
            group_id=group_id,
            sequence_id=row.id,
            status="pending",
            version=0,
        )
        for row in rows
    ]
    session.add_all(queues)
    await session.flush()
    return queues


async def advance_sequence_cursor(
    session: AsyncSession, group_id: int, *, expected: int, persisted: int
) -> bool:
    # Guards against a redelivered batch job persisting the same slice twice.
    result = await session.execute(
        update(DeviceGroup)
        .where(DeviceGroup.id == group_id, DeviceGroup.sequences_persisted == expected)
        .values(sequences_persisted=persisted)
    )
    return result.rowcount == 1


async def get_queue(session: AsyncSession, queue_id: int) -> OptimizationQueue | None:
    return await session.get(OptimizationQueue, queue_id)


async def get_sequence(session: AsyncSession, sequence_id: int) -> RatePlanSequence | None:
    return await session.get(RatePlanSequence, sequence_id)


async def claim_queue(
    session: AsyncSession,
    queue_id: int,
    *,
    resume: bool,
    expected_version: int,
    claimed_at: datetime,
) -> int | None:
    """Move a queue into processing if it is still in the state the message expects.

    Returns the new version, or None when another delivery already claimed it.
    """
    from_status = "processing" if resume else "pending"
    values: dict = {
        "status": "processing",
        "version": expected_version + 1,
        "invocations": OptimizationQueue.invocations + 1,
        "claimed_at": claimed_at,
    }
    if not resume:
        values["started_at"] = claimed_at
    result = await session.execute(
        update(OptimizationQueue)
        .where(
            OptimizationQueue.id == queue_id,
            OptimizationQueue.status == from_status,
            OptimizationQueue.version == expected_version,
        )
        .values(**values)
    )
    if result.rowcount != 1:
        return None
    return expected_version + 1


async def finish_queue(
    session: AsyncSession,
    queue_id: int,
    *,
    expected_version: int,
    status: str,
    completed_at: datetime,
    total_cost: Decimal | None = None,
    strategy_used: str | None = None,
    no_improvement: bool = False,
    error_message: str | None = None,
) -> bool:
    result = await session.execute(
        update(OptimizationQueue)
        .where(
            OptimizationQueue.id == queue_id,
            OptimizationQueue.status == "processing",
            OptimizationQueue.version == expected_version,
        )
        .values(
            status=status,
            version=expected_version + 1,
            total_cost=total_cost,
            strategy_used=strategy_used,
            no_improvement=no_improvement,
            error_message=error_message,
            completed_at=completed_at,
        )
    )
    return result.rowcount == 1


async def fail_unfinished_queues(
    session: AsyncSession, instance_id: int, *, message: str, completed_at: datetime
) -> int:
    # Unfinished queues are ended as errors rather than left dangling.
    result = await session.execute(
        update(OptimizationQueue)
        .where(
            OptimizationQueue.instance_id == instance_id,
            OptimizationQueue.status.not_in(TERMINAL_QUEUE_STATUSES),
        )
        .values(
            status="error",
            version=OptimizationQueue.version + 1,
            error_message=message,
            completed_at=completed_at,
        )
    )
    return int(result.rowcount or 0)


async def replace_assignments(
    session: AsyncSession,
    queue_id: int,
    rows: Iterable[tuple[int, int | None, Decimal]],
) -> None:
    await session.execute(delete(QueueAssignment).where(QueueAssignment.queue_id == queue_id))
    session.add_all(
        QueueAssignment(queue_id=queue_id, device_id=device_id, rate_plan_id=plan_id, computed_cost=cost)
        for device_id, plan_id, cost in rows
    )


async def list_assignments(session: AsyncSession, queue_id: int) -> list[QueueAssignment]:
    result = await session.execute(
        select(QueueAssignment).where(QueueAssignment.queue_id == queue_id).order_by(QueueAssignment.device_id)
    )
    return list(result.scalars().all())


async def delete_losing_assignments(session: AsyncSession, group_id: int, *, winner_queue_id: int | None) -> int:
    queue_ids = select(OptimizationQueue.id).where(OptimizationQueue.group_id == group_id)
    if winner_queue_id is not None:
        queue_ids = queue_ids.where(OptimizationQueue.id != winner_queue_id)
    result = await session.execute(delete(QueueAssignment).where(QueueAssignment.queue_id.in_(queue_ids)))
    return int(result.rowcount or 0)


async def list_group_queues(session: AsyncSession, group_id: int) -> list[OptimizationQueue]:
    result = await session.execute(
        select(OptimizationQueue).where(OptimizationQueue.group_id == group_id).order_by(OptimizationQueue.id)
    )
    return list(result.scalars().all())


async def queue_status_counts(session: AsyncSession, instance_id: int) -> dict[str, int]:
    result = await session.execute(
        select(OptimizationQueue.status, func.count())
        .where(OptimizationQueue.instance_id == instance_id)
        .group_by(OptimizationQueue.status)
    )
    return {status: int(count) for status, count in result.all()}


async def list_pending_queues(session: AsyncSession, instance_id: int) -> list[OptimizationQueue]:
    result = await session.execute(
        select(OptimizationQueue)
        .where(OptimizationQueue.instance_id == instance_id, OptimizationQueue.status == "pending")
        .order_by(OptimizationQueue.id)
    )
    return list(result.scalars().all())


async def list_stalled_queues(
    session: AsyncSession, instance_id: int, *, claimed_before: datetime
) -> list[OptimizationQueue]:
    # Processing queues whose holder stopped before finishing or handing off a continuation.
    result = await session.execute(
        select(OptimizationQueue)
        .where(
            OptimizationQueue.instance_id == instance_id,
            OptimizationQueue.status == "processing",
            OptimizationQueue.claimed_at < claimed_before,
        )
        .order_by(OptimizationQueue.id)
    )
    return list(result.scalars().all())
