from __future__ import annotations

# Re-export cost model primitives for centralized imports.

from rateopt.services.costs.cost_model import (
    CHARGE_TYPES,
    ChargeType,
    CostContext,
    RatePlanTerms,
    device_cost,
    overage_charge,
    pooled_cost,
    quantize_money,
    rate_charge,
)

__all__ = [
    "CHARGE_TYPES",
    "ChargeType",
    "CostContext",
    "RatePlanTerms",
    "device_cost",
    "overage_charge",
    "pooled_cost",
    "quantize_money",
    "rate_charge",
]
