from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select

from rateopt.domain.models import BillingPeriod, Device, RatePlan
from rateopt.persistence.db import SessionLocal, create_schema


DEMO_TENANT_ID = "demo"
DEMO_TIME_ZONE = "America/Chicago"
DEMO_DEVICE_COUNT = 40


@dataclass(frozen=True)
class DemoPlan:
    code: str
    monthly_rate: str
    included_mb: str
    overage_rate: str
    pooling: bool = False


DEMO_PLANS = (
    DemoPlan("iot-100", "5.00", "100", "0.05"),
    DemoPlan("iot-1g", "20.00", "1000", "0.02"),
    DemoPlan("iot-pool-300", "8.00", "300", "0.03", pooling=True),
    DemoPlan("iot-pool-2g", "30.00", "2000", "0.01", pooling=True),
)


def demo_usage_mb(index: int) -> Decimal:
    # Deterministic spread of light, medium and heavy users.
    return Decimal((index * 37) % 900 + 5)


def _current_period() -> tuple[datetime, datetime]:
    today = datetime.now()
    start = datetime(today.year, today.month, 1)
    end = datetime(today.year + 1, 1, 1) if today.month == 12 else datetime(today.year, today.month + 1, 1)
    return start, end


async def seed_demo() -> int:
    await create_schema()
    async with SessionLocal() as session:
        existing = await session.execute(
            select(BillingPeriod.id).where(BillingPeriod.tenant_id == DEMO_TENANT_ID).limit(1)
        )
        period_id = existing.scalar_one_or_none()
        if period_id is not None:
            print(f"Demo tenant already seeded (billing_period_id={period_id}); skipping.")
            return 0

        start, end = _current_period()
        period = BillingPeriod(tenant_id=DEMO_TENANT_ID, period_start=start, period_end=end, time_zone=DEMO_TIME_ZONE)
        session.add(period)
        plans = [
            RatePlan(
                tenant_id=DEMO_TENANT_ID,
                code=plan.code,
                type_id=1,
                monthly_rate=Decimal(plan.monthly_rate),
                included_data_mb=Decimal(plan.included_mb),
                overage_rate_per_unit=Decimal(plan.overage_rate),
                data_per_overage_charge=Decimal("1"),
                allows_pooling=plan.pooling,
            )
            for plan in DEMO_PLANS
        ]
        session.add_all(plans)
        await session.flush()
        session.add_all(
            Device(
                tenant_id=DEMO_TENANT_ID,
                billing_period_id=period.id,
                identifier=f"8901000000000{index:06d}",
                usage_mb=demo_usage_mb(index),
                current_rate_plan_id=plans[0].id,
                communication_plan="cp-fleet" if index % 2 else "cp-sensors",
                rate_plan_type_id=1,
            )
            for index in range(DEMO_DEVICE_COUNT)
        )
        await session.commit()
        print(
            f"Seeded tenant {DEMO_TENANT_ID} with {DEMO_DEVICE_COUNT} devices "
            f"(billing_period_id={period.id})."
        )
        return 0


def main() -> int:
    # Surface clear failures and exit non-zero so dev scripts can detect issues.
    try:
        return asyncio.run(seed_demo())
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
