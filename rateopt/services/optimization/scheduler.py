from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from rateopt.core.config import get_settings
from rateopt.core.errors import OptimizationRunningError, OptimizerError
from rateopt.persistence.db import SessionLocal
from rateopt.persistence.repos import sessions as sessions_repo
from rateopt.services.billing import is_time_to_run
from rateopt.services.optimization.planner import StartedOptimization, start_optimization
from rateopt.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass
class SchedulerSweep:
    started: list[StartedOptimization] = field(default_factory=list)
    blocked: list[int] = field(default_factory=list)
    outside_window: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def run_scheduled_optimizations(
    *,
    portal_type: str = "m2m",
    now: datetime | None = None,
) -> SchedulerSweep:
    """Start an optimization for every billing period whose closing window is open.

    Tenants with a running session are skipped through the normal gate, so a
    sweep can be repeated on a timer without creating duplicate sessions.
    """
    settings = get_settings()
    current = now or _utc_now()
    sweep = SchedulerSweep()
    # Naive period ends are local wall-clock; a day of slack covers every time zone.
    cutoff = current.astimezone(timezone.utc).replace(tzinfo=None) - timedelta(days=1)
    async with SessionLocal() as session:
        periods = await sessions_repo.list_billing_periods_ending_after(session, cutoff)
    for period in periods:
        in_window = is_time_to_run(
            period.period_end,
            period.time_zone or settings.billing_timezone,
            window_days=settings.optimization_window_days,
            start_hour=settings.optimization_start_hour_local,
            now=current,
        )
        if not in_window:
            sweep.outside_window.append(period.id)
            continue
        try:
            started = await start_optimization(
                tenant_id=period.tenant_id,
                billing_period_id=period.id,
                portal_type=portal_type,
                now=current,
            )
        except OptimizationRunningError as exc:
            sweep.blocked.append(period.id)
            logger.info(
                "scheduled_run_blocked tenant_id=%s billing_period_id=%s running_session_id=%s",
                period.tenant_id,
                period.id,
                exc.running_session_id,
            )
            continue
        except OptimizerError as exc:
            # One tenant's bad data must not stop the sweep for the others.
            sweep.failed.append(period.id)
            increment_counter("scheduled_run_failures_total")
            logger.warning(
                "scheduled_run_failed tenant_id=%s billing_period_id=%s error=%s",
                period.tenant_id,
                period.id,
                exc,
            )
            continue
        sweep.started.append(started)
    logger.info(
        "scheduler_sweep_done started=%s blocked=%s outside_window=%s failed=%s",
        len(sweep.started),
        len(sweep.blocked),
        len(sweep.outside_window),
        len(sweep.failed),
    )
    return sweep
