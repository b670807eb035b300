from __future__ import annotations

import argparse
import asyncio
import sys

from rateopt.core.logging import configure_logging
from rateopt.services.optimization.scheduler import run_scheduled_optimizations


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Start optimizations for billing periods inside the run window")
    parser.add_argument("--portal", default="m2m", help="Portal type: m2m|mobility|cross_provider")
    return parser


async def _sweep(args: argparse.Namespace) -> int:
    sweep = await run_scheduled_optimizations(portal_type=args.portal)
    for started in sweep.started:
        print(f"started session_id={started.session_id} instance_id={started.instance_id}")
    print(
        f"started={len(sweep.started)} blocked={len(sweep.blocked)} "
        f"outside_window={len(sweep.outside_window)} failed={len(sweep.failed)}"
    )
    return 1 if sweep.failed else 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_sweep(args))
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"run_scheduler failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
