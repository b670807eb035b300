from __future__ import annotations

from datetime import datetime, timezone

import pytest

from rateopt.core.errors import OptimizationRunningError
from rateopt.persistence.db import SessionLocal
from rateopt.persistence.repos import sessions as sessions_repo
from rateopt.services.optimization.lifecycle import close_session
from rateopt.services.optimization.planner import start_optimization
from rateopt.services.session_gate import try_start_session
from rateopt.tests.utils.flow import MID_PERIOD, record_enqueues
from rateopt.tests.utils.seed import seed_tenant


# 18:00 UTC on Oct 31 is the afternoon of the period's last local day in Chicago.
FINAL_DAY = datetime(2026, 10, 31, 18, 0, tzinfo=timezone.utc)


async def _start(seeded, *, now: datetime = MID_PERIOD):
    return await start_optimization(
        tenant_id=seeded.tenant_id,
        billing_period_id=seeded.billing_period_id,
        portal_type="m2m",
        now=now,
    )


async def _set_instance_status(instance_id: int, status: str) -> None:
    async with SessionLocal() as session:
        await sessions_repo.transition_instance(
            session, instance_id, from_statuses=("created", "processing", "completed"), status=status
        )
        await session.commit()


async def _decide(seeded, *, now: datetime = MID_PERIOD):
    async with SessionLocal() as session:
        period = await sessions_repo.get_billing_period(session, seeded.tenant_id, seeded.billing_period_id)
        return await try_start_session(session, tenant_id=seeded.tenant_id, billing_period=period, now=now)


@pytest.mark.asyncio
async def test_first_session_is_allowed(monkeypatch) -> None:
    record_enqueues(monkeypatch)
    seeded = await seed_tenant(usages=["10", "20"])
    decision = await _decide(seeded)
    assert decision.allow is True
    assert decision.reason == "no_active_session"


@pytest.mark.asyncio
async def test_running_session_blocks_second_start(monkeypatch) -> None:
    recorded = record_enqueues(monkeypatch)
    seeded = await seed_tenant(usages=["10", "20"])
    started = await _start(seeded)
    assert recorded.plans == [started.instance_id]

    with pytest.raises(OptimizationRunningError) as excinfo:
        await _start(seeded)
    assert excinfo.value.running_session_id == started.session_id


@pytest.mark.asyncio
async def test_error_terminal_session_does_not_block(monkeypatch) -> None:
    record_enqueues(monkeypatch)
    seeded = await seed_tenant(usages=["10", "20"])
    started = await _start(seeded)
    # Failed before any queue existed: no queue status to consult.
    await _set_instance_status(started.instance_id, "complete_with_errors")

    decision = await _decide(seeded)
    assert decision.allow is True
    assert decision.reason == "previous_session_failed"
    assert decision.running_session_id == started.session_id


@pytest.mark.asyncio
async def test_completed_session_blocks_until_final_day(monkeypatch) -> None:
    record_enqueues(monkeypatch)
    seeded = await seed_tenant(usages=["10", "20"])
    started = await _start(seeded)
    await _set_instance_status(started.instance_id, "completed")

    blocked = await _decide(seeded, now=MID_PERIOD)
    assert blocked.allow is False
    assert blocked.reason == "optimization_running"

    rerun = await _decide(seeded, now=FINAL_DAY)
    assert rerun.allow is True
    assert rerun.reason == "final_day_rerun"

    again = await _start(seeded, now=FINAL_DAY)
    assert again.gate_reason == "final_day_rerun"


@pytest.mark.asyncio
async def test_closed_session_releases_the_gate(monkeypatch) -> None:
    record_enqueues(monkeypatch)
    seeded = await seed_tenant(usages=["10", "20"])
    started = await _start(seeded)

    assert await close_session(started.session_id) is True
    assert await close_session(started.session_id) is False
    decision = await _decide(seeded)
    assert decision.allow is True
    assert decision.reason == "no_active_session"
