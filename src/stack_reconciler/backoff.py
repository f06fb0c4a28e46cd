"""Bounded exponential backoff for provider status polling and transient retries.

Delay = min(base_delay * (multiplier ** attempt), max_delay), optionally jittered.
``max_wait`` is the per-node ceiling on total time spent polling.
"""

from __future__ import annotations

import random
from dataclasses import dataclass

_MAX_EXPONENT = 64


@dataclass(frozen=True)
class BackoffPolicy:
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 15.0
    max_wait: float = 600.0
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.base_delay < 0:
            raise ValueError(f"base_delay must be >= 0, got: {self.base_delay}")
        if self.multiplier < 1.0:
            raise ValueError(f"multiplier must be >= 1.0, got: {self.multiplier}")
        if self.max_delay < self.base_delay:
            raise ValueError(f"max_delay ({self.max_delay}) must be >= base_delay ({self.base_delay})")
        if self.max_wait <= 0:
            raise ValueError(f"max_wait must be > 0, got: {self.max_wait}")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError(f"jitter must be within [0, 1], got: {self.jitter}")

    def next_delay(self, attempt: int) -> float:
        """Delay before the zero-based *attempt*-th retry or poll."""
        delay = min(self.base_delay * (self.multiplier ** min(attempt, _MAX_EXPONENT)), self.max_delay)
        if self.jitter:
            spread = delay * self.jitter
            delay = max(0.0, delay + random.uniform(-spread, spread))
        return delay
