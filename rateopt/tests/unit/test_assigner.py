from __future__ import annotations

from decimal import Decimal

import pytest

from rateopt.core.errors import WorkItemMismatchError
from rateopt.services.costs.cost_model import CostContext, RatePlanTerms
from rateopt.services.optimizer.assigner import (
    ALL_STRATEGIES,
    UNGROUPED_STRATEGIES,
    RatePoolAssigner,
)
from rateopt.services.optimizer.checkpoint import decode_checkpoint, encode_checkpoint
from rateopt.services.optimizer.pools import DeviceUsage, baseline_assignments, baseline_total


def _plan(plan_id: int, *, rate: str, included: str, overage: str, pooling: bool = False, type_id: int = 1) -> RatePlanTerms:
    return RatePlanTerms(
        id=plan_id,
        type_id=type_id,
        monthly_rate=Decimal(rate),
        included_data_mb=Decimal(included),
        overage_rate_per_unit=Decimal(overage),
        data_per_overage_charge=Decimal("1"),
        allows_pooling=pooling,
    )


class _SteppingClock:
    # Advances one second per read so budgets expire after a known number of checks.
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


SOLO = _plan(1, rate="10", included="100", overage="1")
POOLED = _plan(2, rate="10", included="100", overage="1", pooling=True)
PLANS = {plan.id: plan for plan in (SOLO, POOLED)}


def _devices() -> list[DeviceUsage]:
    return [DeviceUsage(id=1, usage_mb=Decimal("150")), DeviceUsage(id=2, usage_mb=Decimal("50"))]


def test_pooling_absorbs_overage_through_marginal_cost() -> None:
    assigner = RatePoolAssigner(
        queue_id=1,
        sequence_id=1,
        rate_plan_ids=[POOLED.id, SOLO.id],
        plans_by_id=PLANS,
        devices=_devices(),
        context=CostContext(),
        strategies=UNGROUPED_STRATEGIES,
    )
    outcome = assigner.run()
    assert outcome.complete is True
    # Shared 200 MB allowance covers 150 + 50 with no overage.
    assert outcome.total_cost == Decimal("20")
    assert {item.rate_plan_id for item in outcome.assignments} == {POOLED.id}
    assert sum(item.cost for item in outcome.assignments) == outcome.total_cost


def test_sequence_order_breaks_marginal_ties() -> None:
    assigner = RatePoolAssigner(
        queue_id=1,
        sequence_id=2,
        rate_plan_ids=[SOLO.id, POOLED.id],
        plans_by_id=PLANS,
        devices=_devices(),
        context=CostContext(),
        strategies=UNGROUPED_STRATEGIES,
    )
    outcome = assigner.run()
    # Equal first-device marginals go to the earlier pool, so pooling never starts.
    assert outcome.total_cost == Decimal("70")
    assert outcome.strategy_used == "none/largest_first"


def test_type_partitioned_devices_stay_on_their_type() -> None:
    cheap_other_type = _plan(3, rate="1", included="1000", overage="1", type_id=2)
    plans = {SOLO.id: SOLO, cheap_other_type.id: cheap_other_type}
    devices = [DeviceUsage(id=1, usage_mb=Decimal("20"), rate_plan_type_id=1)]
    assigner = RatePoolAssigner(
        queue_id=1,
        sequence_id=1,
        rate_plan_ids=[cheap_other_type.id, SOLO.id],
        plans_by_id=plans,
        devices=devices,
        context=CostContext(),
        strategies=UNGROUPED_STRATEGIES,
        type_partitioned=True,
    )
    outcome = assigner.run()
    assert [item.rate_plan_id for item in outcome.assignments] == [SOLO.id]


def _mixed_devices() -> list[DeviceUsage]:
    usages = ["12", "480", "75", "220", "5", "310", "90", "140", "260", "33", "18", "600"]
    return [
        DeviceUsage(
            id=index + 1,
            usage_mb=Decimal(usage),
            communication_plan="cp-a" if index % 3 else "cp-b",
        )
        for index, usage in enumerate(usages)
    ]


def _mixed_assigner(*, clock=None) -> RatePoolAssigner:
    plans = {
        10: _plan(10, rate="5", included="100", overage="0.05"),
        11: _plan(11, rate="20", included="1000", overage="0.02"),
        12: _plan(12, rate="8", included="300", overage="0.03", pooling=True),
    }
    kwargs = {} if clock is None else {"time_source": clock}
    return RatePoolAssigner(
        queue_id=7,
        sequence_id=3,
        rate_plan_ids=[12, 10, 11],
        plans_by_id=plans,
        devices=_mixed_devices(),
        context=CostContext("rate_charge_and_overage"),
        strategies=ALL_STRATEGIES,
        **kwargs,
    )


def test_resumed_run_matches_uninterrupted_run() -> None:
    expected = _mixed_assigner().run()

    assigner = _mixed_assigner(clock=_SteppingClock())
    outcome = assigner.run(budget_ms=3000)
    invocations = 1
    while not outcome.complete:
        # Round-trip through the wire format between invocations.
        state = decode_checkpoint(encode_checkpoint(outcome.checkpoint))
        outcome = _mixed_assigner(clock=_SteppingClock()).run(budget_ms=3000, resume_from=state)
        invocations += 1

    assert invocations > 1
    assert outcome.total_cost == expected.total_cost
    assert outcome.strategy_used == expected.strategy_used
    assert outcome.assignments == expected.assignments


def test_checkpoint_from_different_inputs_is_rejected() -> None:
    outcome = _mixed_assigner(clock=_SteppingClock()).run(budget_ms=2000)
    assert outcome.complete is False

    other = RatePoolAssigner(
        queue_id=7,
        sequence_id=3,
        rate_plan_ids=[10],
        plans_by_id={10: _plan(10, rate="5", included="100", overage="0.05")},
        devices=_mixed_devices()[:4],
        context=CostContext(),
    )
    with pytest.raises(WorkItemMismatchError):
        other.run(resume_from=outcome.checkpoint)


def test_baseline_pools_devices_on_current_plan() -> None:
    devices = [
        DeviceUsage(id=1, usage_mb=Decimal("150"), current_rate_plan_id=POOLED.id),
        DeviceUsage(id=2, usage_mb=Decimal("50"), current_rate_plan_id=POOLED.id),
        DeviceUsage(id=3, usage_mb=Decimal("0"), baseline_cost=Decimal("3.5")),
    ]
    lines = baseline_assignments(devices, PLANS, CostContext())
    assert lines is not None
    assert baseline_total(lines) == Decimal("23.5")


def test_baseline_unknown_when_a_device_has_no_current_plan() -> None:
    devices = [DeviceUsage(id=1, usage_mb=Decimal("10"))]
    assert baseline_assignments(devices, PLANS, CostContext()) is None
