from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Literal

from rateopt.core.errors import (
    InvalidRatePlanError,
    OptimizationValidationError,
    RatePlanSetEmptyError,
    WorkItemMismatchError,
)
from rateopt.services.costs.cost_model import ZERO, CostContext, RatePlanTerms
from rateopt.services.optimizer.checkpoint import AssignmentSnapshot, CheckpointState, PoolSnapshot
from rateopt.services.optimizer.pools import DeviceUsage, RatePool


logger = logging.getLogger(__name__)

Grouping = Literal["none", "communication_plan"]
DeviceOrder = Literal["largest_first", "smallest_first"]


@dataclass(frozen=True)
class Strategy:
    grouping: Grouping
    order: DeviceOrder

    @property
    def name(self) -> str:
        return f"{self.grouping}/{self.order}"


ALL_STRATEGIES: tuple[Strategy, ...] = (
    Strategy("none", "largest_first"),
    Strategy("none", "smallest_first"),
    Strategy("communication_plan", "largest_first"),
    Strategy("communication_plan", "smallest_first"),
)
UNGROUPED_STRATEGIES: tuple[Strategy, ...] = ALL_STRATEGIES[:2]


@dataclass(frozen=True)
class DeviceAssignment:
    device_id: int
    rate_plan_id: int
    cost: Decimal


@dataclass
class AssignmentOutcome:
    # complete=False means checkpoint carries everything needed to resume.
    complete: bool
    total_cost: Decimal | None = None
    strategy_used: str | None = None
    assignments: list[DeviceAssignment] = field(default_factory=list)
    checkpoint: CheckpointState | None = None
    devices_processed: int = 0


class RatePoolAssigner:
    """Greedy device-to-pool assignment of one sequence under a set of strategies.

    Each strategy walks the devices in its order and places every device in the
    pool with the lowest marginal cost; pools are scanned in sequence order and
    earlier pools win ties. The cheapest strategy is kept, earlier strategies
    winning ties. When a wall-clock budget runs out the run stops between
    devices and returns a checkpoint; resuming from it yields the same result
    as an uninterrupted run.
    """

    def __init__(
        self,
        *,
        queue_id: int,
        sequence_id: int,
        rate_plan_ids: Sequence[int],
        plans_by_id: Mapping[int, RatePlanTerms],
        devices: Sequence[DeviceUsage],
        context: CostContext,
        strategies: Sequence[Strategy] = ALL_STRATEGIES,
        type_partitioned: bool = False,
        time_source: Callable[[], float] = time.monotonic,
    ) -> None:
        if not rate_plan_ids:
            raise RatePlanSetEmptyError("Sequence carries no rate plans")
        if not strategies:
            raise OptimizationValidationError("At least one assignment strategy is required")
        missing = [plan_id for plan_id in rate_plan_ids if plan_id not in plans_by_id]
        if missing:
            raise OptimizationValidationError(f"Unknown rate plans in sequence: {missing}")
        self.plans = [plans_by_id[plan_id] for plan_id in rate_plan_ids]
        invalid = [plan.id for plan in self.plans if not plan.has_valid_overage()]
        if invalid:
            raise InvalidRatePlanError(f"Sequence contains invalid rate plans: {invalid}")
        self.queue_id = queue_id
        self.sequence_id = sequence_id
        self.context = context
        self.strategies = tuple(strategies)
        self.type_partitioned = type_partitioned
        self._devices = {device.id: device for device in devices}
        self._time_source = time_source
        self.fingerprint = self._fingerprint()

    def _fingerprint(self) -> str:
        digest = hashlib.sha256()
        for device_id in sorted(self._devices):
            device = self._devices[device_id]
            digest.update(f"d:{device.id}:{device.usage_mb}:{device.communication_plan}|".encode("utf-8"))
        digest.update(("p:" + ",".join(str(plan.id) for plan in self.plans)).encode("utf-8"))
        digest.update(("s:" + ",".join(strategy.name for strategy in self.strategies)).encode("utf-8"))
        digest.update(f"c:{self.context.charge_type}:{self.context.proration_days}".encode("utf-8"))
        return digest.hexdigest()

    def initial_state(self) -> CheckpointState:
        return CheckpointState(
            queue_id=self.queue_id,
            sequence_id=self.sequence_id,
            fingerprint=self.fingerprint,
        )

    def _check_resume(self, state: CheckpointState) -> CheckpointState:
        if state.queue_id != self.queue_id or state.sequence_id != self.sequence_id:
            raise WorkItemMismatchError(
                f"Checkpoint belongs to queue {state.queue_id}/sequence {state.sequence_id}"
            )
        if state.fingerprint != self.fingerprint:
            raise WorkItemMismatchError("Checkpoint inputs differ from the current device or plan set")
        return state.model_copy(deep=True)

    def _ordered_ids(self, strategy: Strategy) -> list[int]:
        sign = -1 if strategy.order == "largest_first" else 1
        if strategy.grouping == "communication_plan":
            key = lambda d: (d.communication_plan or "", sign * d.usage_mb, d.id)  # noqa: E731
        else:
            key = lambda d: (sign * d.usage_mb, d.id)  # noqa: E731
        return [device.id for device in sorted(self._devices.values(), key=key)]

    @staticmethod
    def _bucket_for(strategy: Strategy, device: DeviceUsage) -> str:
        if strategy.grouping == "communication_plan":
            return device.communication_plan or ""
        return ""

    def _fresh_pools(self) -> list[RatePool]:
        return [RatePool(plan) for plan in self.plans]

    def _restore_pools(self, snapshots: list[PoolSnapshot]) -> list[RatePool]:
        if not snapshots:
            return self._fresh_pools()
        by_id = {snapshot.rate_plan_id: snapshot for snapshot in snapshots}
        return [
            RatePool.restore(plan, by_id[plan.id]) if plan.id in by_id else RatePool(plan)
            for plan in self.plans
        ]

    def _eligible(self, pool: RatePool, device: DeviceUsage) -> bool:
        if not self.type_partitioned or device.rate_plan_type_id is None:
            return True
        return pool.plan.type_id == device.rate_plan_type_id

    def _cheapest_pool(self, pools: list[RatePool], device: DeviceUsage) -> RatePool:
        best: RatePool | None = None
        best_cost: Decimal | None = None
        for pool in pools:
            if not self._eligible(pool, device):
                continue
            marginal = pool.marginal_cost(device.usage_mb, self.context)
            if best_cost is None or marginal < best_cost:
                best, best_cost = pool, marginal
        if best is None:
            raise RatePlanSetEmptyError(f"Device {device.id} has no eligible rate plan in this sequence")
        return best

    def _close_strategy(self, state: CheckpointState) -> None:
        strategy = self.strategies[state.strategy_index]
        total = sum((item.cost for item in state.assignments), ZERO)
        if state.best_cost is None or total < state.best_cost:
            state.best_cost = total
            state.best_strategy = strategy.name
            state.best_assignments = list(state.assignments)
        logger.debug(
            "assigner_strategy_done queue_id=%s strategy=%s total=%s",
            self.queue_id,
            strategy.name,
            total,
        )
        state.strategy_index += 1
        state.remaining_device_ids = None
        state.bucket = None
        state.pools = []
        state.assignments = []

    def run(
        self,
        *,
        budget_ms: int | None = None,
        resume_from: CheckpointState | None = None,
    ) -> AssignmentOutcome:
        state = self.initial_state() if resume_from is None else self._check_resume(resume_from)
        deadline = None if budget_ms is None else self._time_source() + budget_ms / 1000.0
        processed = 0
        while state.strategy_index < len(self.strategies):
            strategy = self.strategies[state.strategy_index]
            if state.remaining_device_ids is None:
                state.remaining_device_ids = self._ordered_ids(strategy)
            pools = self._restore_pools(state.pools)
            remaining = state.remaining_device_ids
            position = 0
            while position < len(remaining):
                device = self._devices[remaining[position]]
                bucket = self._bucket_for(strategy, device)
                if bucket != state.bucket:
                    # Communication plan buckets never share pools.
                    pools = self._fresh_pools() if state.bucket is not None else pools
                    state.bucket = bucket
                pool = self._cheapest_pool(pools, device)
                cost = pool.add(device.usage_mb, self.context)
                state.assignments.append(
                    AssignmentSnapshot(device_id=device.id, rate_plan_id=pool.plan.id, cost=cost)
                )
                position += 1
                processed += 1
                if deadline is not None and position < len(remaining) and self._time_source() >= deadline:
                    state.remaining_device_ids = remaining[position:]
                    state.pools = [item.snapshot() for item in pools]
                    return self._suspended(state, processed)
            self._close_strategy(state)
            if (
                deadline is not None
                and state.strategy_index < len(self.strategies)
                and self._time_source() >= deadline
            ):
                return self._suspended(state, processed)
        assignments = sorted(
            (DeviceAssignment(item.device_id, item.rate_plan_id, item.cost) for item in state.best_assignments),
            key=lambda item: item.device_id,
        )
        return AssignmentOutcome(
            complete=True,
            total_cost=state.best_cost if state.best_cost is not None else ZERO,
            strategy_used=state.best_strategy,
            assignments=assignments,
            devices_processed=processed,
        )

    def _suspended(self, state: CheckpointState, processed: int) -> AssignmentOutcome:
        logger.info(
            "assigner_budget_exhausted queue_id=%s strategy_index=%s remaining=%s",
            self.queue_id,
            state.strategy_index,
            len(state.remaining_device_ids or []),
        )
        return AssignmentOutcome(
            complete=False,
            total_cost=state.best_cost,
            strategy_used=state.best_strategy,
            checkpoint=state,
            devices_processed=processed,
        )
