from __future__ import annotations

import asyncio
import sys

from rateopt.persistence.db import create_schema


def main() -> int:
    # Tables are created idempotently; existing rows are left untouched.
    try:
        asyncio.run(create_schema())
    except Exception as exc:  # noqa: BLE001 - surface any connection or DDL errors
        print(f"init_db failed: {exc}", file=sys.stderr)
        return 1
    print("Schema ready.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
