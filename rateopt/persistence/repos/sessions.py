from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rateopt.domain.models import (
    BillingPeriod,
    OptimizationInstance,
    OptimizationQueue,
    OptimizationSession,
)


async def get_billing_period(
    session: AsyncSession, tenant_id: str, billing_period_id: int
) -> BillingPeriod | None:
    # Return None for tenant mismatch to keep 404 semantics.
    result = await session.execute(
        select(BillingPeriod).where(
            BillingPeriod.id == billing_period_id,
            BillingPeriod.tenant_id == tenant_id,
        )
    )
    return result.scalar_one_or_none()


async def list_billing_periods_ending_after(session: AsyncSession, cutoff: datetime) -> list[BillingPeriod]:
    # Candidates for scheduled runs; the local-time window check happens in the caller.
    result = await session.execute(
        select(BillingPeriod)
        .where(BillingPeriod.period_end > cutoff)
        .order_by(BillingPeriod.tenant_id, BillingPeriod.id)
    )
    return list(result.scalars().all())


async def create_session(
    session: AsyncSession,
    *,
    guid: str,
    tenant_id: str,
    billing_period_id: int,
) -> OptimizationSession:
    row = OptimizationSession(
        guid=guid,
        tenant_id=tenant_id,
        billing_period_id=billing_period_id,
        status="running",
        is_active=True,
    )
    session.add(row)
    await session.flush()
    return row


async def create_instance(
    session: AsyncSession,
    *,
    session_id: int,
    tenant_id: str,
    portal_type: str,
    billing_period: BillingPeriod,
    uses_proration: bool,
    charge_type: str,
    skip_lower_cost_check: bool,
    device_count_expected: int,
) -> OptimizationInstance:
    row = OptimizationInstance(
        session_id=session_id,
        tenant_id=tenant_id,
        portal_type=portal_type,
        billing_period_id=billing_period.id,
        period_start=billing_period.period_start,
        period_end=billing_period.period_end,
        time_zone=billing_period.time_zone,
        uses_proration=uses_proration,
        charge_type=charge_type,
        skip_lower_cost_check=skip_lower_cost_check,
        device_count_expected=device_count_expected,
        status="created",
        monitor_state="waiting_for_queues",
        monitor_attempts=0,
    )
    session.add(row)
    await session.flush()
    return row


async def get_session_row(session: AsyncSession, session_id: int) -> OptimizationSession | None:
    return await session.get(OptimizationSession, session_id)


async def get_instance(session: AsyncSession, instance_id: int) -> OptimizationInstance | None:
    return await session.get(OptimizationInstance, instance_id)


async def get_latest_active_session(session: AsyncSession, tenant_id: str) -> OptimizationSession | None:
    result = await session.execute(
        select(OptimizationSession)
        .where(
            OptimizationSession.tenant_id == tenant_id,
            OptimizationSession.is_active.is_(True),
        )
        .order_by(OptimizationSession.created_at.desc(), OptimizationSession.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_latest_instance(session: AsyncSession, session_id: int) -> OptimizationInstance | None:
    result = await session.execute(
        select(OptimizationInstance)
        .where(OptimizationInstance.session_id == session_id)
        .order_by(OptimizationInstance.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_latest_queue_status(session: AsyncSession, session_id: int) -> str | None:
    # Most recently created queue across every instance of the session.
    result = await session.execute(
        select(OptimizationQueue.status)
        .join(OptimizationInstance, OptimizationInstance.id == OptimizationQueue.instance_id)
        .where(OptimizationInstance.session_id == session_id)
        .order_by(OptimizationQueue.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def transition_instance(
    session: AsyncSession,
    instance_id: int,
    *,
    from_statuses: tuple[str, ...],
    **values,
) -> bool:
    # Conditional update; callers treat False as "someone else already moved it".
    result = await session.execute(
        update(OptimizationInstance)
        .where(
            OptimizationInstance.id == instance_id,
            OptimizationInstance.status.in_(from_statuses),
        )
        .values(**values)
    )
    return result.rowcount == 1


async def transition_monitor_state(
    session: AsyncSession,
    instance_id: int,
    *,
    from_state: str,
    expected_attempts: int,
    **values,
) -> bool:
    result = await session.execute(
        update(OptimizationInstance)
        .where(
            OptimizationInstance.id == instance_id,
            OptimizationInstance.monitor_state == from_state,
            OptimizationInstance.monitor_attempts == expected_attempts,
        )
        .values(**values)
    )
    return result.rowcount == 1


async def claim_error_report(session: AsyncSession, instance_id: int, *, reported_at: datetime) -> bool:
    # Only the first caller wins, so each instance produces one error notification.
    result = await session.execute(
        update(OptimizationInstance)
        .where(
            OptimizationInstance.id == instance_id,
            OptimizationInstance.error_reported_at.is_(None),
        )
        .values(error_reported_at=reported_at)
    )
    return result.rowcount == 1


async def deactivate_session(session: AsyncSession, session_id: int, *, status: str) -> bool:
    result = await session.execute(
        update(OptimizationSession)
        .where(
            OptimizationSession.id == session_id,
            OptimizationSession.is_active.is_(True),
        )
        .values(is_active=False, status=status)
    )
    return result.rowcount == 1
