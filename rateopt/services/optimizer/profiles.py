from __future__ import annotations

from dataclasses import dataclass

from rateopt.services.optimizer.assigner import ALL_STRATEGIES, UNGROUPED_STRATEGIES, Strategy
from rateopt.services.optimizer.sequences import PermutationMode


@dataclass(frozen=True)
class PortalProfile:
    # Tagged variant that keeps the generator and assigner portal-agnostic.
    portal_type: str
    group_kind: str
    permutation_mode: PermutationMode
    strategies: tuple[Strategy, ...]

    @property
    def type_partitioned(self) -> bool:
        return self.permutation_mode == "type_partitioned"


PORTAL_PROFILES: dict[str, PortalProfile] = {
    # M2M groups share a communication plan, so both groupings are meaningful.
    "m2m": PortalProfile(
        portal_type="m2m",
        group_kind="communication_plan",
        permutation_mode="plain",
        strategies=ALL_STRATEGIES,
    ),
    "mobility": PortalProfile(
        portal_type="mobility",
        group_kind="optimization_group",
        permutation_mode="type_partitioned",
        strategies=UNGROUPED_STRATEGIES,
    ),
    # Cross-provider fleets are grouped like M2M but span carriers, so no type filter applies.
    "cross_provider": PortalProfile(
        portal_type="cross_provider",
        group_kind="communication_plan",
        permutation_mode="plain",
        strategies=ALL_STRATEGIES,
    ),
}


def get_profile(portal_type: str) -> PortalProfile:
    try:
        return PORTAL_PROFILES[portal_type.lower()]
    except KeyError as exc:
        raise ValueError(f"Unsupported portal type: {portal_type}") from exc
