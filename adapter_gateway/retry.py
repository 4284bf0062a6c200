from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from contracts.errors import TransientGatewayError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff for idempotent gateway reads and the
    entity create+confirm step. Validation failures and conflicts are never
    retried: only TransientGatewayError triggers another attempt.
    """

    max_attempts: int = 3
    base_delay_seconds: float = 0.05
    multiplier: float = 2.0
    max_delay_seconds: float = 1.0

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay_seconds, self.base_delay_seconds * (self.multiplier ** max(0, attempt - 1)))


NO_RETRY = RetryPolicy(max_attempts=1)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    label: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except TransientGatewayError as exc:
            if attempt >= max(1, policy.max_attempts):
                logger.error("%s failed after %d attempt(s): %s", label, attempt, exc.message)
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s transient failure (attempt %d/%d), retrying in %.3fs: %s",
                label,
                attempt,
                policy.max_attempts,
                delay,
                exc.message,
            )
            sleep(delay)
