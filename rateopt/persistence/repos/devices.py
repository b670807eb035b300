from __future__ import annotations

from decimal import Decimal

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from rateopt.domain.models import Device, GroupDevice, GroupRatePlan, RatePlan
from rateopt.services.costs.cost_model import RatePlanTerms
from rateopt.services.optimizer.pools import DeviceUsage


def _dec(value) -> Decimal:
    # Drivers hand back floats on SQLite; normalize through str to keep exact decimals.
    return value if isinstance(value, Decimal) else Decimal(str(value))


def to_terms(row: RatePlan) -> RatePlanTerms:
    return RatePlanTerms(
        id=row.id,
        type_id=row.type_id,
        monthly_rate=_dec(row.monthly_rate),
        included_data_mb=_dec(row.included_data_mb),
        overage_rate_per_unit=_dec(row.overage_rate_per_unit),
        data_per_overage_charge=_dec(row.data_per_overage_charge),
        allows_pooling=bool(row.allows_pooling),
        code=row.code,
    )


def to_usage(row: Device) -> DeviceUsage:
    return DeviceUsage(
        id=row.id,
        usage_mb=_dec(row.usage_mb),
        current_rate_plan_id=row.current_rate_plan_id,
        baseline_cost=_dec(row.baseline_cost) if row.baseline_cost is not None else None,
        communication_plan=row.communication_plan,
        rate_plan_type_id=row.rate_plan_type_id,
    )


async def list_period_devices(session: AsyncSession, tenant_id: str, billing_period_id: int) -> list[Device]:
    # Tenant scoping prevents cross-tenant leakage.
    result = await session.execute(
        select(Device)
        .where(Device.tenant_id == tenant_id, Device.billing_period_id == billing_period_id)
        .order_by(Device.id)
    )
    return list(result.scalars().all())


async def list_candidate_plans(
    session: AsyncSession,
    tenant_id: str,
    *,
    group_kind: str,
    group_name: str,
) -> list[RatePlan]:
    # Plans scoped to the group's key, plus unscoped plans, in stable id order.
    scope = RatePlan.communication_plan if group_kind == "communication_plan" else RatePlan.optimization_group
    result = await session.execute(
        select(RatePlan)
        .where(RatePlan.tenant_id == tenant_id, or_(scope.is_(None), scope == group_name))
        .order_by(RatePlan.id)
    )
    return list(result.scalars().all())


async def list_plans_by_ids(session: AsyncSession, plan_ids: list[int]) -> list[RatePlan]:
    if not plan_ids:
        return []
    result = await session.execute(select(RatePlan).where(RatePlan.id.in_(plan_ids)).order_by(RatePlan.id))
    return list(result.scalars().all())


async def attach_group_members(
    session: AsyncSession,
    group_id: int,
    *,
    device_ids: list[int],
    rate_plan_ids: list[int],
) -> None:
    session.add_all(GroupDevice(group_id=group_id, device_id=device_id) for device_id in device_ids)
    session.add_all(
        GroupRatePlan(group_id=group_id, rate_plan_id=plan_id, position=position)
        for position, plan_id in enumerate(rate_plan_ids)
    )


async def list_group_devices(session: AsyncSession, group_id: int) -> list[Device]:
    result = await session.execute(
        select(Device)
        .join(GroupDevice, GroupDevice.device_id == Device.id)
        .where(GroupDevice.group_id == group_id)
        .order_by(Device.id)
    )
    return list(result.scalars().all())


async def list_group_plans(session: AsyncSession, group_id: int) -> list[RatePlan]:
    result = await session.execute(
        select(RatePlan)
        .join(GroupRatePlan, GroupRatePlan.rate_plan_id == RatePlan.id)
        .where(GroupRatePlan.group_id == group_id)
        .order_by(GroupRatePlan.position, RatePlan.id)
    )
    return list(result.scalars().all())
