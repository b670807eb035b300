from __future__ import annotations

from collections import defaultdict


_counters: dict[str, int] = defaultdict(int)


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for ops dashboards and the health endpoint.
    _counters[name] += value


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_counters() -> None:
    # Test-only helper to isolate counter assertions.
    _counters.clear()
