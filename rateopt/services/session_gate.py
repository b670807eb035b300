from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from rateopt.domain.models import BillingPeriod
from rateopt.persistence.repos import sessions as sessions_repo
from rateopt.services.billing import is_last_day_of_period
from rateopt.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

INSTANCE_ERROR_STATUSES = ("complete_with_errors",)
QUEUE_ERROR_STATUSES = ("error",)


@dataclass(frozen=True)
class RunningState:
    # Derived projection of the tenant's most recent active session.
    session_id: int | None
    instance_status: str | None
    queue_status: str | None

    @property
    def is_error_terminal(self) -> bool:
        # An instance that errored before creating queues has no queue status to consult.
        if self.instance_status not in INSTANCE_ERROR_STATUSES:
            return False
        return self.queue_status is None or self.queue_status in QUEUE_ERROR_STATUSES


@dataclass(frozen=True)
class GateDecision:
    allow: bool
    running_session_id: int | None
    reason: str


async def running_state(session: AsyncSession, tenant_id: str) -> RunningState:
    active = await sessions_repo.get_latest_active_session(session, tenant_id)
    if active is None:
        return RunningState(session_id=None, instance_status=None, queue_status=None)
    instance = await sessions_repo.get_latest_instance(session, active.id)
    queue_status = await sessions_repo.get_latest_queue_status(session, active.id)
    return RunningState(
        session_id=active.id,
        instance_status=instance.status if instance is not None else None,
        queue_status=queue_status,
    )


async def try_start_session(
    session: AsyncSession,
    *,
    tenant_id: str,
    billing_period: BillingPeriod,
    now: datetime | None = None,
) -> GateDecision:
    """Best-effort per-tenant gate; read-then-act with no lock.

    Two callers racing here can both be allowed. Detection of concurrent
    sessions is left to alerting downstream.
    """
    state = await running_state(session, tenant_id)
    if state.session_id is None:
        return GateDecision(allow=True, running_session_id=None, reason="no_active_session")
    if state.is_error_terminal:
        return GateDecision(allow=True, running_session_id=state.session_id, reason="previous_session_failed")
    # Final-day re-optimization outranks strict mutual exclusion.
    if state.instance_status == "completed" and is_last_day_of_period(
        billing_period.period_end, billing_period.time_zone, now
    ):
        increment_counter("session_gate_final_day_overrides_total")
        logger.warning(
            "session_gate_final_day_override tenant_id=%s running_session_id=%s",
            tenant_id,
            state.session_id,
        )
        return GateDecision(allow=True, running_session_id=state.session_id, reason="final_day_rerun")
    increment_counter("session_gate_blocked_total")
    return GateDecision(allow=False, running_session_id=state.session_id, reason="optimization_running")
