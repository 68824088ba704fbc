"""Bounded exponential backoff for transient provider failures."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from kubeconverge.models.config import RetryConfig


@dataclass(frozen=True)
class RetryPolicy:
    """``delay(n) = min(base * multiplier**(n-1), max_delay)`` plus up to ``jitter`` of it.

    ``max_attempts`` counts the first try: 1 disables retries.
    """

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.2
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False, compare=False)

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_attempts=max(1, config.max_attempts),
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            jitter=config.jitter,
        )

    def backoff(self, attempt: int) -> float:
        """Delay before retry number *attempt* (1-based), without jitter."""
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)

    def delay(self, attempt: int) -> float:
        backoff = self.backoff(attempt)
        if self.jitter and backoff:
            return backoff + random.uniform(0, backoff * self.jitter)
        return backoff

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts
