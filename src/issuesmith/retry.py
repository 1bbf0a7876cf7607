from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
import time
from typing import TypeVar

from issuesmith.observability import log_event


LOGGER = logging.getLogger("issuesmith.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 2.0
    multiplier: float = 2.0
    max_delay_seconds: float = 60.0

    def delay_for(self, attempt_index: int) -> float:
        delay = self.base_delay_seconds * (self.multiplier**attempt_index)
        return min(delay, self.max_delay_seconds)


DEFAULT_RETRY_POLICY = RetryPolicy()


def with_backoff(
    fn: Callable[[], T],
    *,
    is_transient: Callable[[BaseException], bool],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    operation: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call fn, retrying only errors accepted by is_transient.

    Non-transient errors and the error from the final attempt propagate unchanged.
    """
    if policy.max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as exc:
            if not is_transient(exc) or attempt >= policy.max_attempts - 1:
                raise
            delay = policy.delay_for(attempt)
            log_event(
                LOGGER,
                "retry_scheduled",
                operation=operation,
                attempt=attempt + 1,
                delay_seconds=delay,
                error_type=type(exc).__name__,
            )
            sleep(delay)
            attempt += 1
