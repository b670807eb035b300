from __future__ import annotations

from datetime import datetime, timezone

import pytest

from rateopt.services.optimization.scheduler import run_scheduled_optimizations
from rateopt.tests.utils.flow import record_enqueues
from rateopt.tests.utils.seed import seed_tenant


# Six local days before the October period closes.
SWEEP_AT = datetime(2026, 10, 25, 17, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_sweep_starts_only_periods_inside_the_window(monkeypatch) -> None:
    recorded = record_enqueues(monkeypatch)
    closing = await seed_tenant(usages=["10", "20"])
    next_month = await seed_tenant(
        usages=["10", "20"],
        period_start=datetime(2026, 11, 1),
        period_end=datetime(2026, 12, 1),
    )
    await seed_tenant(
        usages=["10", "20"],
        period_start=datetime(2026, 9, 1),
        period_end=datetime(2026, 10, 1),
    )

    sweep = await run_scheduled_optimizations(now=SWEEP_AT)

    assert [started.instance_id for started in sweep.started] == recorded.plans
    assert len(sweep.started) == 1
    assert sweep.outside_window == [next_month.billing_period_id]
    assert sweep.failed == []

    again = await run_scheduled_optimizations(now=SWEEP_AT)
    assert again.started == []
    assert again.blocked == [closing.billing_period_id]
