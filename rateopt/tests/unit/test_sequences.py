from __future__ import annotations

import itertools
import math
from decimal import Decimal

import pytest

from rateopt.core.errors import RatePlanLimitExceededError, RatePlanSetEmptyError
from rateopt.services.costs.cost_model import RatePlanTerms
from rateopt.services.optimizer.sequences import SequenceGenerator, split_eligible


def _plan(plan_id: int, *, type_id: int = 1, overage: str = "0.1", per_charge: str = "1") -> RatePlanTerms:
    return RatePlanTerms(
        id=plan_id,
        type_id=type_id,
        monthly_rate=Decimal("5"),
        included_data_mb=Decimal("100"),
        overage_rate_per_unit=Decimal(overage),
        data_per_overage_charge=Decimal(per_charge),
    )


def test_three_plans_yield_six_distinct_sequences() -> None:
    generator = SequenceGenerator([_plan(1), _plan(2), _plan(3)], limit=15)
    sequences = list(generator)
    assert generator.count() == 6
    assert len(sequences) == 6
    assert len(set(sequences)) == 6
    assert sequences[0] == (1, 2, 3)


def test_invalid_plans_are_excluded_before_counting() -> None:
    plans = [_plan(1), _plan(2), _plan(3), _plan(4, overage="0"), _plan(5, per_charge="-1")]
    generator = SequenceGenerator(plans, limit=15)
    assert generator.count() == 6
    assert sorted(plan.id for plan in generator.rejected) == [4, 5]
    assert all(4 not in seq and 5 not in seq for seq in generator)


def test_duplicate_plan_ids_are_dropped() -> None:
    eligible, rejected = split_eligible([_plan(1), _plan(1), _plan(2)])
    assert [plan.id for plan in eligible] == [1, 2]
    assert rejected == []


def test_output_is_deterministic() -> None:
    plans = [_plan(7), _plan(3), _plan(5), _plan(9)]
    first = list(SequenceGenerator(plans, limit=15))
    second = list(SequenceGenerator(plans, limit=15))
    assert first == second


def test_limit_exceeded_is_a_hard_failure() -> None:
    with pytest.raises(RatePlanLimitExceededError):
        SequenceGenerator([_plan(i) for i in range(1, 5)], limit=3)


def test_empty_eligible_set_rejected() -> None:
    with pytest.raises(RatePlanSetEmptyError):
        SequenceGenerator([_plan(1, overage="0")], limit=15)


def test_type_partitioned_product_skips_unused_types() -> None:
    plans = [_plan(1, type_id=1), _plan(2, type_id=1), _plan(3, type_id=2), _plan(4, type_id=2), _plan(5, type_id=3)]
    generator = SequenceGenerator(plans, limit=15, mode="type_partitioned", device_type_ids=[1, 2])
    sequences = list(generator)
    # 2! orderings of type 1 times 2! orderings of type 2; type 3 has no devices.
    assert generator.count() == 4
    assert sequences == [(1, 2, 3, 4), (1, 2, 4, 3), (2, 1, 3, 4), (2, 1, 4, 3)]


def test_batches_cover_the_stream_without_overlap() -> None:
    generator = SequenceGenerator([_plan(1), _plan(2), _plan(3), _plan(4)], limit=15)
    batches = [generator.batch(offset, 10) for offset in range(0, generator.count(), 10)]
    assert [len(batch) for batch in batches] == [10, 10, 4]
    assert [seq for batch in batches for seq in batch] == list(generator)


def test_limit_counts_plans_across_all_types() -> None:
    # Six plans per type stays under the cap for each type, but not for the group.
    plans = [_plan(type_id * 10 + i, type_id=type_id) for type_id in (1, 2, 3) for i in range(6)]
    with pytest.raises(RatePlanLimitExceededError):
        SequenceGenerator(plans, limit=15, mode="type_partitioned")


def test_type_partitioned_order_matches_product_of_permutations() -> None:
    plans = [_plan(1, type_id=1), _plan(2, type_id=1), _plan(3, type_id=1), _plan(4, type_id=2), _plan(5, type_id=2)]
    generator = SequenceGenerator(plans, limit=15, mode="type_partitioned")
    expected = [
        first + second
        for first, second in itertools.product(itertools.permutations((1, 2, 3)), itertools.permutations((4, 5)))
    ]
    assert list(generator) == expected


def test_large_partition_is_sliced_without_expanding_it() -> None:
    plans = [_plan(i, type_id=1) for i in range(1, 14)] + [_plan(14, type_id=2)]
    generator = SequenceGenerator(plans, limit=15, mode="type_partitioned")
    assert generator.count() == math.factorial(13)
    assert generator.count() > 2**31
    assert generator.batch(0, 2) == [
        tuple(range(1, 14)) + (14,),
        tuple(range(1, 12)) + (13, 12, 14),
    ]
