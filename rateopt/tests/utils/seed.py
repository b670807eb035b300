from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from rateopt.domain.models import BillingPeriod, Device, RatePlan
from rateopt.persistence.db import SessionLocal


@dataclass
class SeededTenant:
    tenant_id: str
    billing_period_id: int
    plan_ids: list[int] = field(default_factory=list)
    device_ids: list[int] = field(default_factory=list)


def plan_row(
    tenant_id: str,
    code: str,
    *,
    monthly_rate: str,
    included_mb: str,
    overage_rate: str = "0.01",
    data_per_overage: str = "1",
    pooling: bool = False,
    type_id: int = 1,
    communication_plan: str | None = None,
) -> RatePlan:
    return RatePlan(
        tenant_id=tenant_id,
        code=code,
        type_id=type_id,
        monthly_rate=Decimal(monthly_rate),
        included_data_mb=Decimal(included_mb),
        overage_rate_per_unit=Decimal(overage_rate),
        data_per_overage_charge=Decimal(data_per_overage),
        allows_pooling=pooling,
        communication_plan=communication_plan,
    )


async def seed_tenant(
    *,
    usages: list[str],
    plans: list[dict] | None = None,
    period_start: datetime = datetime(2026, 10, 1),
    period_end: datetime = datetime(2026, 11, 1),
    time_zone: str = "America/Chicago",
    communication_plan: str = "cp-default",
    current_plan_index: int = 0,
) -> SeededTenant:
    # Default catalogue: a cheap small plan, a larger plan and a pooled plan.
    tenant_id = f"t-{uuid4().hex[:8]}"
    plan_specs = plans or [
        {"code": "small", "monthly_rate": "5", "included_mb": "100", "overage_rate": "0.05"},
        {"code": "large", "monthly_rate": "20", "included_mb": "1000", "overage_rate": "0.02"},
        {"code": "pool", "monthly_rate": "8", "included_mb": "300", "overage_rate": "0.03", "pooling": True},
    ]
    async with SessionLocal() as session:
        period = BillingPeriod(
            tenant_id=tenant_id,
            period_start=period_start,
            period_end=period_end,
            time_zone=time_zone,
        )
        session.add(period)
        rows = [plan_row(tenant_id, **plan_spec) for plan_spec in plan_specs]
        session.add_all(rows)
        await session.flush()
        current_plan = rows[current_plan_index]
        devices = [
            Device(
                tenant_id=tenant_id,
                billing_period_id=period.id,
                identifier=f"iccid-{index:04d}",
                usage_mb=Decimal(usage),
                current_rate_plan_id=current_plan.id,
                communication_plan=communication_plan,
                rate_plan_type_id=current_plan.type_id,
            )
            for index, usage in enumerate(usages)
        ]
        session.add_all(devices)
        await session.flush()
        seeded = SeededTenant(
            tenant_id=tenant_id,
            billing_period_id=period.id,
            plan_ids=[row.id for row in rows],
            device_ids=[device.id for device in devices],
        )
        await session.commit()
    return seeded
