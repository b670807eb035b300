from __future__ import annotations

import logging
from datetime import datetime, timezone

from rateopt.core.config import get_settings
from rateopt.core.errors import InstanceNotFoundError
from rateopt.domain.models import OptimizationInstance
from rateopt.persistence.db import SessionLocal
from rateopt.persistence.repos import queues as queues_repo
from rateopt.persistence.repos import sessions as sessions_repo
from rateopt.services.billing import proration_days
from rateopt.services.costs.cost_model import CostContext
from rateopt.services.optimization.progress import report_error
from rateopt.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def cost_context_for(instance: OptimizationInstance, *, charge_type: str | None = None) -> CostContext:
    # Proration uses the instance's snapshot of the billing window, never the live period row.
    settings = get_settings()
    days = proration_days(instance.period_start, instance.period_end) if instance.uses_proration else None
    return CostContext(
        charge_type=charge_type or instance.charge_type,
        proration_days=days,
        days_basis=settings.proration_days_basis,
    )


async def notify_instance_error(instance_id: int, message: str) -> bool:
    """Send the single error notification an instance is allowed; later calls no-op."""
    async with SessionLocal() as session:
        instance = await sessions_repo.get_instance(session, instance_id)
        if instance is None:
            raise InstanceNotFoundError(f"Instance {instance_id} not found")
        claimed = await sessions_repo.claim_error_report(session, instance_id, reported_at=_utc_now())
        await session.commit()
        session_id = instance.session_id
    if not claimed:
        increment_counter("optimization_error_notifications_suppressed_total")
        return False
    await report_error(session_id=session_id, error_message=message)
    return True


async def abort_instance(instance_id: int, message: str) -> bool:
    # Validation failures stop the whole instance; queues still open are ended as errors.
    now = _utc_now()
    async with SessionLocal() as session:
        moved = await sessions_repo.transition_instance(
            session,
            instance_id,
            from_statuses=("created", "processing"),
            status="complete_with_errors",
            monitor_state="aborted",
            error_message=message,
        )
        if moved:
            await queues_repo.fail_unfinished_queues(session, instance_id, message=message, completed_at=now)
        await session.commit()
    if moved:
        increment_counter("optimization_instances_aborted_total")
        logger.warning("optimization_instance_aborted instance_id=%s reason=%s", instance_id, message)
        await notify_instance_error(instance_id, message)
    return moved


async def close_session(session_id: int, *, status: str = "completed") -> bool:
    # Consumers call this after reading results so the gate stops counting the session as running.
    async with SessionLocal() as session:
        closed = await sessions_repo.deactivate_session(session, session_id, status=status)
        await session.commit()
    if closed:
        logger.info("optimization_session_closed session_id=%s status=%s", session_id, status)
    return closed
