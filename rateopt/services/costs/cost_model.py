from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal

from rateopt.core.errors import InvalidRatePlanError


ChargeType = Literal["rate_charge_only", "overage_only", "rate_charge_and_overage"]
CHARGE_TYPES: tuple[str, ...] = ("rate_charge_only", "overage_only", "rate_charge_and_overage")

ZERO = Decimal("0")
_MONEY_QUANTUM = Decimal("0.0001")


@dataclass(frozen=True)
class RatePlanTerms:
    # Immutable pricing snapshot for one rate plan during a run.
    id: int
    type_id: int
    monthly_rate: Decimal
    included_data_mb: Decimal
    overage_rate_per_unit: Decimal
    data_per_overage_charge: Decimal
    allows_pooling: bool = False
    code: str | None = None

    def has_valid_overage(self) -> bool:
        return self.overage_rate_per_unit > ZERO and self.data_per_overage_charge > ZERO


@dataclass(frozen=True)
class CostContext:
    """Charge-type and proration settings shared by every cost evaluation in a run.

    ``proration_days`` is the number of days the billing window actually covers;
    ``None`` disables proration so the full monthly rate applies.
    """

    charge_type: str = "rate_charge_and_overage"
    proration_days: int | None = None
    days_basis: int = 30

    def __post_init__(self) -> None:
        if self.charge_type not in CHARGE_TYPES:
            raise ValueError(f"Unsupported charge type: {self.charge_type}")
        if self.days_basis <= 0:
            raise ValueError("days_basis must be positive")

    @property
    def includes_rate(self) -> bool:
        return self.charge_type != "overage_only"

    @property
    def includes_overage(self) -> bool:
        return self.charge_type != "rate_charge_only"

    def rate_factor(self) -> Decimal:
        if self.proration_days is None:
            return Decimal("1")
        return Decimal(self.proration_days) / Decimal(self.days_basis)


def quantize_money(value: Decimal) -> Decimal:
    # Round only at persistence boundaries; in-memory totals keep full precision.
    return value.quantize(_MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def _require_valid(plan: RatePlanTerms) -> None:
    if not plan.has_valid_overage():
        raise InvalidRatePlanError(
            f"Rate plan {plan.id} has non-positive overage rate or data per overage charge"
        )


def rate_charge(plan: RatePlanTerms, context: CostContext, *, device_count: int = 1) -> Decimal:
    if not context.includes_rate:
        return ZERO
    return plan.monthly_rate * device_count * context.rate_factor()


def overage_charge(plan: RatePlanTerms, usage_mb: Decimal, allowance_mb: Decimal) -> Decimal:
    _require_valid(plan)
    excess = usage_mb - allowance_mb
    if excess <= ZERO:
        return ZERO
    return excess / plan.data_per_overage_charge * plan.overage_rate_per_unit


def device_cost(usage_mb: Decimal, plan: RatePlanTerms, context: CostContext) -> Decimal:
    """Standalone cost of one device on one plan, ignoring any shared pool."""
    total = rate_charge(plan, context)
    if context.includes_overage:
        total += overage_charge(plan, usage_mb, plan.included_data_mb)
    return total


def pooled_cost(
    plan: RatePlanTerms,
    total_usage_mb: Decimal,
    device_count: int,
    context: CostContext,
) -> Decimal:
    """Cost of a shared pool: rate per member, overage on aggregate usage vs aggregate allowance."""
    if device_count <= 0:
        return ZERO
    total = rate_charge(plan, context, device_count=device_count)
    if context.includes_overage:
        total += overage_charge(plan, total_usage_mb, plan.included_data_mb * device_count)
    return total
