from __future__ import annotations

import argparse
import asyncio
import sys

from rateopt.core.errors import OptimizationRunningError, OptimizerError
from rateopt.core.logging import configure_logging
from rateopt.services.optimization.planner import start_optimization


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Start a rate plan optimization for a tenant")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--billing-period", required=True, type=int, help="Billing period id")
    parser.add_argument("--portal", default="m2m", help="Portal type: m2m|mobility|cross_provider")
    parser.add_argument("--charge-type", default=None, help="rate_charge_and_overage|overage_only|rate_charge_only")
    parser.add_argument("--prorate", action="store_true", help="Prorate monthly rates over the billing window")
    parser.add_argument(
        "--skip-lower-cost-check",
        action="store_true",
        help="Report optimized assignments even when they do not beat current plans",
    )
    return parser


async def _start(args: argparse.Namespace) -> int:
    started = await start_optimization(
        tenant_id=args.tenant,
        billing_period_id=args.billing_period,
        portal_type=args.portal,
        charge_type=args.charge_type,
        uses_proration=args.prorate,
        skip_lower_cost_check=args.skip_lower_cost_check,
    )
    print(
        f"session_id={started.session_id} session_guid={started.session_guid} "
        f"instance_id={started.instance_id} gate={started.gate_reason}"
    )
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_start(args))
    except OptimizationRunningError as exc:
        print(f"Optimization already running (session {exc.running_session_id})", file=sys.stderr)
        return 2
    except OptimizerError as exc:
        print(f"start_optimization failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
