from __future__ import annotations

from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from rateopt.core.errors import InstanceNotFoundError
from rateopt.persistence.repos import queues as queues_repo
from rateopt.persistence.repos import sessions as sessions_repo


def _money(value: Any) -> str | None:
    if value is None:
        return None
    return str(value if isinstance(value, Decimal) else Decimal(str(value)))


async def describe_instance(session: AsyncSession, instance_id: int) -> dict[str, Any]:
    # Read model for operators and the result consumer; never mutates state.
    instance = await sessions_repo.get_instance(session, instance_id)
    if instance is None:
        raise InstanceNotFoundError(f"Instance {instance_id} not found")
    groups = []
    for group in await queues_repo.list_groups(session, instance_id):
        winner = await queues_repo.get_queue(session, group.winning_queue_id) if group.winning_queue_id else None
        groups.append(
            {
                "group_id": group.id,
                "name": group.name,
                "kind": group.kind,
                "status": group.status,
                "device_count": group.device_count,
                "baseline_cost": _money(group.baseline_cost),
                "sequence_count": group.sequence_count_expected,
                "winning_queue_id": group.winning_queue_id,
                "total_cost": _money(winner.total_cost) if winner else None,
                "strategy_used": winner.strategy_used if winner else None,
                "no_improvement": winner.no_improvement if winner else None,
            }
        )
    return {
        "instance_id": instance.id,
        "session_id": instance.session_id,
        "tenant_id": instance.tenant_id,
        "portal_type": instance.portal_type,
        "status": instance.status,
        "monitor_state": instance.monitor_state,
        "monitor_attempts": instance.monitor_attempts,
        "device_count_expected": instance.device_count_expected,
        "device_count_actual": instance.device_count_actual,
        "error_message": instance.error_message,
        "finalized_at": instance.finalized_at.isoformat() if instance.finalized_at else None,
        "rate_plan_update_go": instance.rate_plan_update_go,
        "queue_counts": await queues_repo.queue_status_counts(session, instance_id),
        "groups": groups,
    }


async def winning_assignments(session: AsyncSession, instance_id: int) -> list[dict[str, Any]]:
    instance = await sessions_repo.get_instance(session, instance_id)
    if instance is None:
        raise InstanceNotFoundError(f"Instance {instance_id} not found")
    rows: list[dict[str, Any]] = []
    for group in await queues_repo.list_groups(session, instance_id):
        if group.winning_queue_id is None:
            continue
        for assignment in await queues_repo.list_assignments(session, group.winning_queue_id):
            rows.append(
                {
                    "group_id": group.id,
                    "device_id": assignment.device_id,
                    "rate_plan_id": assignment.rate_plan_id,
                    "computed_cost": _money(assignment.computed_cost),
                }
            )
    return rows
