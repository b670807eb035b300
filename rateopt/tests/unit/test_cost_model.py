from __future__ import annotations

from decimal import Decimal

import pytest

from rateopt.core.errors import InvalidRatePlanError
from rateopt.services.costs.cost_model import (
    CostContext,
    RatePlanTerms,
    device_cost,
    pooled_cost,
    quantize_money,
)


def _plan(**overrides) -> RatePlanTerms:
    values = {
        "id": 1,
        "type_id": 1,
        "monthly_rate": Decimal("10"),
        "included_data_mb": Decimal("50"),
        "overage_rate_per_unit": Decimal("0.5"),
        "data_per_overage_charge": Decimal("1"),
        "allows_pooling": True,
    }
    values.update(overrides)
    return RatePlanTerms(**values)


def test_rate_charge_and_overage_formula() -> None:
    plan = _plan(data_per_overage_charge=Decimal("4"))
    cost = device_cost(Decimal("70"), plan, CostContext("rate_charge_and_overage"))
    # 10 + (70 - 50) / 4 * 0.5
    assert cost == Decimal("12.5")


def test_charge_type_variants() -> None:
    plan = _plan()
    usage = Decimal("80")
    assert device_cost(usage, plan, CostContext("rate_charge_only")) == Decimal("10")
    assert device_cost(usage, plan, CostContext("overage_only")) == Decimal("15")
    assert device_cost(Decimal("10"), plan, CostContext("rate_charge_and_overage")) == Decimal("10")


def test_proration_scales_only_the_rate_term() -> None:
    plan = _plan()
    context = CostContext("rate_charge_and_overage", proration_days=15, days_basis=30)
    assert device_cost(Decimal("60"), plan, context) == Decimal("5") + Decimal("5")


def test_pooled_overage_uses_cumulative_usage() -> None:
    plan = _plan()
    context = CostContext("rate_charge_and_overage")
    # Two devices at 60% of a 100 MB shared allowance: one overage on the 20 MB excess.
    assert pooled_cost(plan, Decimal("120"), 2, context) == Decimal("20") + Decimal("10")
    # Uneven usage shows the difference from per-device overage.
    per_device = device_cost(Decimal("90"), plan, context) + device_cost(Decimal("30"), plan, context)
    assert per_device == Decimal("40")
    assert pooled_cost(plan, Decimal("120"), 2, context) < per_device


def test_invalid_overage_economics_raise() -> None:
    plan = _plan(data_per_overage_charge=Decimal("0"))
    with pytest.raises(InvalidRatePlanError):
        device_cost(Decimal("100"), plan, CostContext())


def test_unknown_charge_type_rejected() -> None:
    with pytest.raises(ValueError):
        CostContext("flat")


def test_quantize_money_rounds_half_up() -> None:
    assert quantize_money(Decimal("1.23455")) == Decimal("1.2346")
