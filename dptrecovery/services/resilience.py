from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any, Awaitable, Callable

from dptrecovery.core.config import get_settings
from dptrecovery.core.errors import CommandError, ConfigurationError


logger = logging.getLogger(__name__)


Sleep = Callable[[float], Awaitable[None]]


def _default_retryable(exc: Exception) -> bool:
    # Configuration problems never heal on their own; external command failures might.
    if isinstance(exc, ConfigurationError):
        return False
    return isinstance(exc, (CommandError, asyncio.TimeoutError, TimeoutError, OSError))


@dataclass(frozen=True)
class RetryPolicy:
    # Deterministic capped backoff so schedules are reproducible in tests and runbooks.
    max_attempts: int
    base_delay_seconds: float
    max_delay_seconds: float
    timeout_seconds: float | None = None

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed ``attempt`` (1-based) before the next one."""
        return min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)


def offsite_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        max_attempts=settings.offsite_max_attempts,
        base_delay_seconds=settings.offsite_base_delay_seconds,
        max_delay_seconds=settings.offsite_max_delay_seconds,
    )


@dataclass
class RetryOutcome:
    value: Any = None
    attempts: int = 0
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: Sleep | None = None,
    on_retry: Callable[[int, Exception, float], None] | None = None,
) -> RetryOutcome:
    """Run ``func`` with bounded retries; the last error is returned, not raised."""
    policy = policy or offsite_retry_policy()
    retryable = retryable or _default_retryable
    sleep = sleep or asyncio.sleep
    max_attempts = max(policy.max_attempts, 1)
    attempt = 1
    while True:
        try:
            if policy.timeout_seconds:
                value = await asyncio.wait_for(func(), timeout=policy.timeout_seconds)
            else:
                value = await func()
            return RetryOutcome(value=value, attempts=attempt)
        except Exception as exc:  # noqa: BLE001 - outcome carries the failure to the caller
            if attempt >= max_attempts or not retryable(exc):
                return RetryOutcome(attempts=attempt, error=exc)
            delay = policy.delay_for(attempt)
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            logger.warning(
                "retry_scheduled attempt=%s max_attempts=%s delay_s=%.1f error=%s",
                attempt,
                max_attempts,
                delay,
                exc,
            )
            await sleep(delay)
            attempt += 1
