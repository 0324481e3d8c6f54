"""
Retry policy for failed deliveries.

The delay before retry N (N = 1..max_retries) is

    base_delay * 2 ** (N - 1)

optionally capped at ``max_delay`` and randomized by ``jitter``. With the
defaults (no cap, no jitter) the delays are strictly increasing.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any

from bookspace_bus.config import EventBusConfig

RETRY_COUNT_HEADER = "x-retry-count"
LAST_RETRY_AT_HEADER = "x-last-retry-at"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff.

    Attributes:
        max_retries: Redeliveries allowed before dead-lettering.
        base_delay: Delay before the first retry, in seconds.
        max_delay: Optional cap on any delay, in seconds.
        jitter: Fraction (0.0 - 1.0) of the delay to randomize.

    Example:
        >>> policy = RetryPolicy(max_retries=3, base_delay=1.0)
        >>> [policy.delay_for(n) for n in range(3)]
        [1.0, 2.0, 4.0]
        >>> policy.should_retry(3)
        False
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float | None = None
    jitter: float = 0.0

    @classmethod
    def from_config(cls, config: EventBusConfig) -> RetryPolicy:
        return cls(
            max_retries=config.max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            jitter=config.retry_jitter,
        )

    def should_retry(self, retry_count: int) -> bool:
        """True if a delivery that has been retried ``retry_count`` times may retry again."""
        return retry_count < self.max_retries

    def delay_for(self, retry_count: int) -> float:
        """
        Delay in seconds before republishing a delivery that has been
        retried ``retry_count`` times so far (0 for a first failure).
        """
        delay: float = self.base_delay * (2**retry_count)

        if self.max_delay is not None:
            delay = min(delay, self.max_delay)

        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay = max(0.0, delay + random.uniform(-jitter_range, jitter_range))  # nosec B311

        return delay


def read_retry_count(headers: dict[str, Any] | None) -> int:
    """
    Read ``x-retry-count`` from message headers.

    Missing, negative or unparsable values count as 0.
    """
    value = (headers or {}).get(RETRY_COUNT_HEADER)
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    try:
        count = int(value)
    except (TypeError, ValueError):
        return 0
    return max(count, 0)


__all__ = [
    "LAST_RETRY_AT_HEADER",
    "RETRY_COUNT_HEADER",
    "RetryPolicy",
    "read_retry_count",
]
