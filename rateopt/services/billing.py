from __future__ import annotations

import math
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def local_now(time_zone: str, now: datetime | None = None) -> datetime:
    # Naive inputs are treated as UTC so callers never depend on host time zone.
    current = now or _utc_now()
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    return current.astimezone(ZoneInfo(time_zone))


def last_local_day(period_end: datetime) -> date:
    """Final calendar day covered by a period whose end is a local wall-clock time.

    Periods that end exactly at midnight close on the previous day.
    """
    if period_end.time() == time(0, 0):
        return (period_end - timedelta(days=1)).date()
    return period_end.date()


def is_last_day_of_period(period_end: datetime, time_zone: str, now: datetime | None = None) -> bool:
    return local_now(time_zone, now).date() == last_local_day(period_end)


def is_time_to_run(
    period_end: datetime,
    time_zone: str,
    *,
    window_days: int,
    start_hour: int | None = None,
    now: datetime | None = None,
) -> bool:
    # Scheduled runs happen in the closing window; a start hour pins them to the last day.
    current = local_now(time_zone, now)
    last_day = last_local_day(period_end)
    days_left = (last_day - current.date()).days
    if days_left < 0:
        return False
    if start_hour is not None:
        return days_left == 0 and current.hour >= start_hour
    return days_left < window_days


def proration_days(period_start: datetime, period_end: datetime) -> int:
    # Partial days count as whole days for rate proration.
    seconds = (period_end - period_start).total_seconds()
    return max(1, math.ceil(seconds / 86400))


def minutes_until_period_end(period_end: datetime, time_zone: str, now: datetime | None = None) -> float:
    current = local_now(time_zone, now)
    end = period_end.replace(tzinfo=ZoneInfo(time_zone))
    return (end - current).total_seconds() / 60.0


def has_time_for_rate_plan_updates(
    change_count: int,
    period_end: datetime,
    time_zone: str,
    *,
    devices_per_minute: int = 60,
    batch_size: int = 250,
    buffer_minutes: int = 10,
    now: datetime | None = None,
) -> bool:
    """Whether winning plan changes can be pushed to the carrier before the period closes.

    Each batch takes at least a minute; the buffer absorbs carrier-side latency.
    """
    if change_count <= 0:
        return True
    rate = max(1, devices_per_minute)
    batches = math.ceil(change_count / max(1, batch_size))
    needed = max(math.ceil(change_count / rate), batches) + buffer_minutes
    return needed <= minutes_until_period_end(period_end, time_zone, now)
