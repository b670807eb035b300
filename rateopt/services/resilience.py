from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from redis.exceptions import RedisError
from sqlalchemy.exc import DBAPIError, OperationalError

from rateopt.core.config import get_settings
from rateopt.core.errors import TransientStoreError
from rateopt.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError, TransientStoreError, RedisError, OperationalError)


def is_transient(exc: Exception) -> bool:
    # Store and network unavailability only; validation failures are deterministic.
    if isinstance(exc, TransientException):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize store retry behavior for deterministic policy changes.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.store_call_timeout_ms,
        max_attempts=settings.store_retry_max_attempts,
        backoff_ms=settings.store_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    operation: str = "store_call",
) -> Any:
    """Await ``func`` with a per-call timeout, retrying transient store failures.

    Non-retryable errors and the final failed attempt propagate unchanged.
    """
    policy = policy or default_retry_policy()
    should_retry = retryable or is_transient
    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - re-raised unless transient
            if attempt == attempts or not should_retry(exc):
                raise
            increment_counter("store_retries_total")
            sleep_s = backoff_delay_s(attempt, base_s=policy.backoff_ms / 1000.0) * random.uniform(0.5, 1.5)
            logger.warning(
                "store_retry operation=%s attempt=%s sleep_s=%.3f error=%s",
                operation,
                attempt,
                sleep_s,
                type(exc).__name__,
            )
            await asyncio.sleep(sleep_s)


def backoff_delay_s(attempt: int, *, base_s: float, max_s: float | None = None) -> float:
    # Exponential delay without jitter; monitor schedules depend on it being reproducible.
    if attempt <= 0:
        return 0
    delay = base_s * (2 ** (attempt - 1))
    return delay if max_s is None else min(max_s, delay)
