from __future__ import annotations

import itertools
import logging
import math
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from typing import Literal

from rateopt.core.errors import RatePlanLimitExceededError, RatePlanSetEmptyError
from rateopt.services.costs.cost_model import RatePlanTerms


logger = logging.getLogger(__name__)

PermutationMode = Literal["plain", "type_partitioned"]


@dataclass(frozen=True)
class PlanPartition:
    # Rate plans sharing one type id, in the caller's stable order.
    type_id: int
    plans: tuple[RatePlanTerms, ...]


def split_eligible(plans: Iterable[RatePlanTerms]) -> tuple[list[RatePlanTerms], list[RatePlanTerms]]:
    """Split plans into (eligible, rejected) and drop duplicate plan ids.

    Rejected plans have non-positive overage economics and must never reach a sequence.
    """
    eligible: list[RatePlanTerms] = []
    rejected: list[RatePlanTerms] = []
    seen: set[int] = set()
    for plan in plans:
        if plan.id in seen:
            continue
        seen.add(plan.id)
        if plan.has_valid_overage():
            eligible.append(plan)
        else:
            rejected.append(plan)
    return eligible, rejected


def partition_by_type(
    plans: Sequence[RatePlanTerms],
    device_type_ids: Iterable[int] | None = None,
) -> list[PlanPartition]:
    # Keep only plan types at least one device can use; order partitions by type id.
    wanted = set(device_type_ids) if device_type_ids is not None else None
    buckets: dict[int, list[RatePlanTerms]] = {}
    for plan in plans:
        if wanted is not None and plan.type_id not in wanted:
            continue
        buckets.setdefault(plan.type_id, []).append(plan)
    return [PlanPartition(type_id=type_id, plans=tuple(buckets[type_id])) for type_id in sorted(buckets)]


class SequenceGenerator:
    """Deterministic, lazy rate-plan permutation source for one device group."""

    def __init__(
        self,
        plans: Sequence[RatePlanTerms],
        *,
        limit: int,
        mode: PermutationMode = "plain",
        device_type_ids: Iterable[int] | None = None,
    ) -> None:
        eligible, rejected = split_eligible(plans)
        if rejected:
            logger.warning(
                "rate_plans_rejected count=%s ids=%s",
                len(rejected),
                ",".join(str(plan.id) for plan in rejected),
            )
        self.mode = mode
        self.rejected = rejected
        if mode == "type_partitioned":
            self.partitions = partition_by_type(eligible, device_type_ids)
        else:
            self.partitions = [PlanPartition(type_id=-1, plans=tuple(eligible))] if eligible else []
        self.plans = [plan for partition in self.partitions for plan in partition.plans]
        if not self.plans:
            raise RatePlanSetEmptyError("No eligible rate plans remain for this group")
        # The cap applies to the whole group, not per type; partitions multiply the sequence count.
        if len(self.plans) > limit:
            raise RatePlanLimitExceededError(
                f"Group has {len(self.plans)} rate plans to permute; limit is {limit}"
            )

    def count(self) -> int:
        total = 1
        for partition in self.partitions:
            total *= math.factorial(len(partition.plans))
        return total

    def __iter__(self) -> Iterator[tuple[int, ...]]:
        plan_ids = [tuple(plan.id for plan in partition.plans) for partition in self.partitions]
        return _ordered_product(plan_ids, ())

    def batch(self, offset: int, size: int) -> list[tuple[int, ...]]:
        # Slice the deterministic stream so continuations can resume from a cursor.
        if offset < 0 or size <= 0:
            raise ValueError("offset must be >= 0 and size must be positive")
        return list(itertools.islice(iter(self), offset, offset + size))


def _ordered_product(partitions: list[tuple[int, ...]], prefix: tuple[int, ...]) -> Iterator[tuple[int, ...]]:
    # Same order as itertools.product over per-type permutations, without materializing any of them.
    # Each type's plans stay contiguous; earlier types vary slowest.
    if not partitions:
        yield prefix
        return
    head, rest = partitions[0], partitions[1:]
    for ordering in itertools.permutations(head):
        yield from _ordered_product(rest, prefix + ordering)
