from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal

from rateopt.services.costs.cost_model import (
    ZERO,
    CostContext,
    RatePlanTerms,
    device_cost,
    pooled_cost,
)
from rateopt.services.optimizer.checkpoint import PoolSnapshot


@dataclass(frozen=True)
class DeviceUsage:
    # Read-only usage snapshot for one device in the billing window.
    id: int
    usage_mb: Decimal
    current_rate_plan_id: int | None = None
    baseline_cost: Decimal | None = None
    communication_plan: str | None = None
    rate_plan_type_id: int | None = None


class RatePool:
    """Running usage and cost for one rate plan within a strategy pass.

    Pooling plans share ``included_data_mb * device_count`` across members, so
    the marginal cost of a device depends on what is already in the pool.
    """

    def __init__(
        self,
        plan: RatePlanTerms,
        *,
        device_count: int = 0,
        usage_mb: Decimal = ZERO,
        cost: Decimal = ZERO,
    ) -> None:
        self.plan = plan
        self.device_count = device_count
        self.usage_mb = usage_mb
        self.cost = cost

    def cost_with(self, usage_mb: Decimal, context: CostContext) -> Decimal:
        if self.plan.allows_pooling:
            return pooled_cost(self.plan, self.usage_mb + usage_mb, self.device_count + 1, context)
        return self.cost + device_cost(usage_mb, self.plan, context)

    def marginal_cost(self, usage_mb: Decimal, context: CostContext) -> Decimal:
        return self.cost_with(usage_mb, context) - self.cost

    def add(self, usage_mb: Decimal, context: CostContext) -> Decimal:
        # Return the marginal cost so per-device assignment costs sum to the pool total.
        new_cost = self.cost_with(usage_mb, context)
        marginal = new_cost - self.cost
        self.device_count += 1
        self.usage_mb += usage_mb
        self.cost = new_cost
        return marginal

    def snapshot(self) -> PoolSnapshot:
        return PoolSnapshot(
            rate_plan_id=self.plan.id,
            device_count=self.device_count,
            usage_mb=self.usage_mb,
            cost=self.cost,
        )

    @classmethod
    def restore(cls, plan: RatePlanTerms, snapshot: PoolSnapshot) -> RatePool:
        return cls(
            plan,
            device_count=snapshot.device_count,
            usage_mb=snapshot.usage_mb,
            cost=snapshot.cost,
        )


@dataclass(frozen=True)
class BaselineLine:
    device_id: int
    rate_plan_id: int | None
    cost: Decimal


def baseline_assignments(
    devices: Iterable[DeviceUsage],
    plans_by_id: Mapping[int, RatePlanTerms],
    context: CostContext,
) -> list[BaselineLine] | None:
    """Cost of leaving every device on its current plan.

    Explicit per-device baseline costs win; otherwise devices are pooled by
    their current plan. Returns ``None`` when any device has neither, because
    a partial baseline would make the no-regression check meaningless.
    """
    lines: list[BaselineLine] = []
    pools: dict[int, RatePool] = {}
    for device in sorted(devices, key=lambda item: item.id):
        if device.baseline_cost is not None:
            lines.append(BaselineLine(device.id, device.current_rate_plan_id, device.baseline_cost))
            continue
        plan = plans_by_id.get(device.current_rate_plan_id) if device.current_rate_plan_id is not None else None
        if plan is None or not plan.has_valid_overage():
            return None
        pool = pools.setdefault(plan.id, RatePool(plan))
        lines.append(BaselineLine(device.id, plan.id, pool.add(device.usage_mb, context)))
    return lines


def baseline_total(lines: Iterable[BaselineLine]) -> Decimal:
    return sum((line.cost for line in lines), ZERO)
