from __future__ import annotations

from decimal import Decimal

import pytest

from rateopt.core.config import get_settings
from rateopt.core.errors import CheckpointUnavailableError, OptimizationRunningError
from rateopt.domain.models import Device
from rateopt.persistence.db import SessionLocal
from rateopt.persistence.repos import devices as devices_repo
from rateopt.persistence.repos import queues as queues_repo
from rateopt.services.optimization import lifecycle
from rateopt.services.optimization.lifecycle import close_session
from rateopt.services.optimization.planner import persist_sequence_batch, start_optimization
from rateopt.services.optimization.queue import SequenceBatchPayload
from rateopt.services.optimization.results import describe_instance, winning_assignments
from rateopt.services.telemetry import counters_snapshot
from rateopt.tests.utils.flow import MID_PERIOD
from rateopt.tests.utils.seed import SeededTenant, seed_tenant


USAGES = ["40", "90", "250", "600"]


async def _run(seeded: SeededTenant, *, portal_type: str = "m2m"):
    # Inline execution drains planning, queues and the monitor before returning.
    started = await start_optimization(
        tenant_id=seeded.tenant_id,
        billing_period_id=seeded.billing_period_id,
        portal_type=portal_type,
        now=MID_PERIOD,
    )
    async with SessionLocal() as session:
        summary = await describe_instance(session, started.instance_id)
        rows = await winning_assignments(session, started.instance_id)
    return started, summary, rows


def _capture_error_reports(monkeypatch) -> list[str]:
    sent: list[str] = []

    async def _report_error(*, session_id: int, error_message: str):
        sent.append(error_message)

    monkeypatch.setattr(lifecycle, "report_error", _report_error)
    return sent


@pytest.mark.asyncio
async def test_inline_run_finalizes_with_cheaper_assignments() -> None:
    seeded = await seed_tenant(usages=USAGES)

    _, summary, rows = await _run(seeded)

    assert summary["status"] == "completed"
    assert summary["monitor_state"] == "finalized"
    assert summary["queue_counts"] == {"complete": 6}
    group = summary["groups"][0]
    assert group["sequence_count"] == 6
    # Everyone on "small": 5 + 5 + (5 + 150 * 0.05) + (5 + 500 * 0.05)
    assert Decimal(group["baseline_cost"]) == Decimal("52.5")
    assert Decimal(group["total_cost"]) < Decimal(group["baseline_cost"])
    assert sorted(row["device_id"] for row in rows) == sorted(seeded.device_ids)
    assert sum(Decimal(row["computed_cost"]) for row in rows) == Decimal(group["total_cost"])


@pytest.mark.asyncio
async def test_sequence_batches_do_not_change_the_result(monkeypatch) -> None:
    unbatched = await seed_tenant(usages=USAGES)
    _, expected, _ = await _run(unbatched)

    monkeypatch.setenv("SEQUENCE_BATCH_LIMIT", "2")
    get_settings.cache_clear()
    batched = await seed_tenant(usages=USAGES)
    _, summary, _ = await _run(batched)

    assert summary["status"] == "completed"
    assert summary["queue_counts"] == {"complete": 6}
    assert summary["groups"][0]["total_cost"] == expected["groups"][0]["total_cost"]
    async with SessionLocal() as session:
        group = await queues_repo.get_group(session, summary["groups"][0]["group_id"])
    assert group.sequences_persisted == 6


@pytest.mark.asyncio
async def test_redelivered_sequence_batch_is_ignored(monkeypatch) -> None:
    monkeypatch.setenv("SEQUENCE_BATCH_LIMIT", "2")
    get_settings.cache_clear()
    seeded = await seed_tenant(usages=USAGES)
    started, summary, _ = await _run(seeded)
    group_id = summary["groups"][0]["group_id"]

    created = await persist_sequence_batch(
        SequenceBatchPayload(instance_id=started.instance_id, group_id=group_id, offset=2)
    )
    assert created == 0
    async with SessionLocal() as session:
        queues = await queues_repo.list_group_queues(session, group_id)
    assert len(queues) == 6


@pytest.mark.asyncio
async def test_invalid_rate_plan_aborts_instance(monkeypatch) -> None:
    sent = _capture_error_reports(monkeypatch)
    seeded = await seed_tenant(
        usages=USAGES,
        plans=[
            {"code": "small", "monthly_rate": "5", "included_mb": "100", "overage_rate": "0.05"},
            {"code": "broken", "monthly_rate": "1", "included_mb": "10", "overage_rate": "0"},
        ],
    )

    started, summary, rows = await _run(seeded)

    assert summary["status"] == "complete_with_errors"
    assert summary["monitor_state"] == "aborted"
    assert "invalid overage" in summary["error_message"]
    assert summary["groups"] == []
    assert rows == []
    assert len(sent) == 1

    # The failed session no longer blocks a new attempt.
    retry = await start_optimization(
        tenant_id=seeded.tenant_id,
        billing_period_id=seeded.billing_period_id,
        portal_type="m2m",
        now=MID_PERIOD,
    )
    assert retry.gate_reason == "previous_session_failed"
    assert retry.session_id != started.session_id


@pytest.mark.asyncio
async def test_invalid_rate_plans_can_be_excluded_instead(monkeypatch) -> None:
    monkeypatch.setenv("ABORT_ON_INVALID_RATE_PLANS", "false")
    get_settings.cache_clear()
    seeded = await seed_tenant(
        usages=USAGES,
        plans=[
            {"code": "small", "monthly_rate": "5", "included_mb": "100", "overage_rate": "0.05"},
            {"code": "large", "monthly_rate": "20", "included_mb": "1000", "overage_rate": "0.02"},
            {"code": "broken", "monthly_rate": "1", "included_mb": "10", "overage_rate": "0"},
        ],
    )

    _, summary, _ = await _run(seeded)

    assert summary["status"] == "completed"
    assert summary["groups"][0]["sequence_count"] == 2


@pytest.mark.asyncio
async def test_single_device_group_is_skipped() -> None:
    seeded = await seed_tenant(usages=USAGES)
    async with SessionLocal() as session:
        session.add(
            Device(
                tenant_id=seeded.tenant_id,
                billing_period_id=seeded.billing_period_id,
                identifier="iccid-solo",
                usage_mb=Decimal("75"),
                current_rate_plan_id=seeded.plan_ids[0],
                communication_plan="cp-solo",
                rate_plan_type_id=1,
            )
        )
        await session.commit()

    _, summary, rows = await _run(seeded)

    statuses = {group["name"]: group["status"] for group in summary["groups"]}
    assert statuses == {"cp-default": "finalized", "cp-solo": "skipped"}
    assert summary["status"] == "completed"
    assert len(rows) == len(seeded.device_ids)


@pytest.mark.asyncio
async def test_mobility_portal_uses_ungrouped_strategies() -> None:
    seeded = await seed_tenant(usages=USAGES)

    _, summary, _ = await _run(seeded, portal_type="mobility")

    group = summary["groups"][0]
    assert summary["status"] == "completed"
    assert group["kind"] == "optimization_group"
    assert group["strategy_used"] in {"none/largest_first", "none/smallest_first", "baseline"}


@pytest.mark.asyncio
async def test_completed_session_blocks_until_closed() -> None:
    seeded = await seed_tenant(usages=USAGES)
    started, _, _ = await _run(seeded)

    with pytest.raises(OptimizationRunningError):
        await start_optimization(
            tenant_id=seeded.tenant_id,
            billing_period_id=seeded.billing_period_id,
            portal_type="m2m",
            now=MID_PERIOD,
        )

    await close_session(started.session_id)
    reopened = await start_optimization(
        tenant_id=seeded.tenant_id,
        billing_period_id=seeded.billing_period_id,
        portal_type="m2m",
        now=MID_PERIOD,
    )
    assert reopened.gate_reason == "no_active_session"


@pytest.mark.asyncio
async def test_mobility_devices_without_a_plan_of_their_type_are_left_out() -> None:
    seeded = await seed_tenant(usages=["40", "90", "250"])
    async with SessionLocal() as session:
        stranger = Device(
            tenant_id=seeded.tenant_id,
            billing_period_id=seeded.billing_period_id,
            identifier="iccid-type2",
            usage_mb=Decimal("75"),
            current_rate_plan_id=seeded.plan_ids[0],
            communication_plan="cp-default",
            rate_plan_type_id=2,
        )
        session.add(stranger)
        await session.commit()
        stranger_id = stranger.id

    _, summary, rows = await _run(seeded, portal_type="mobility")

    group = summary["groups"][0]
    assert summary["status"] == "completed"
    assert set(summary["queue_counts"]) == {"complete"}
    assert group["device_count"] == 3
    assert sorted(row["device_id"] for row in rows) == sorted(seeded.device_ids)
    assert stranger_id not in {row["device_id"] for row in rows}
    assert counters_snapshot()["devices_without_plan_type_total"] == 1


@pytest.mark.asyncio
async def test_unexpected_planning_failure_aborts_instance(monkeypatch) -> None:
    sent = _capture_error_reports(monkeypatch)
    seeded = await seed_tenant(usages=USAGES)

    async def _broken_catalogue(*_args, **_kwargs):
        raise RuntimeError("catalogue row could not be decoded")

    monkeypatch.setattr(devices_repo, "list_candidate_plans", _broken_catalogue)

    started, summary, rows = await _run(seeded)

    assert summary["status"] == "complete_with_errors"
    assert summary["monitor_state"] == "aborted"
    assert summary["error_message"] == "Planning failed; check worker logs"
    assert summary["groups"] == []
    assert rows == []
    assert len(sent) == 1
    assert counters_snapshot()["plan_instance_failures_total"] == 1

    monkeypatch.undo()
    retry = await start_optimization(
        tenant_id=seeded.tenant_id,
        billing_period_id=seeded.billing_period_id,
        portal_type="m2m",
        now=MID_PERIOD,
    )
    assert retry.gate_reason == "previous_session_failed"


@pytest.mark.asyncio
async def test_transient_planning_failure_is_retried(monkeypatch) -> None:
    seeded = await seed_tenant(usages=USAGES)
    calls: list[str] = []
    real_list_candidate_plans = devices_repo.list_candidate_plans

    async def _flaky_catalogue(*args, **kwargs):
        calls.append("call")
        if len(calls) == 1:
            raise CheckpointUnavailableError("device store unreachable")
        return await real_list_candidate_plans(*args, **kwargs)

    monkeypatch.setattr(devices_repo, "list_candidate_plans", _flaky_catalogue)

    _, summary, _ = await _run(seeded)

    assert len(calls) == 2
    assert summary["status"] == "completed"
    assert summary["queue_counts"] == {"complete": 6}
