"""
Exponential backoff shared by payment retries and webhook redelivery.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict
import random


@dataclass(frozen=True)
class RetryPolicy:
    """
    delay(n) = min(max_delay_ms, base_delay_ms * backoff_multiplier ** n)

    ``max_attempts`` bounds the number of retries after the first try.
    Jitter spreads scheduled times by +/- ``jitter_ratio`` of the delay and
    never exceeds ``max_delay_ms``; ``delay_ms`` itself stays deterministic.
    """
    max_attempts: int = 3
    base_delay_ms: int = 1000
    backoff_multiplier: float = 2.0
    max_delay_ms: int = 30000
    jitter_ratio: float = 0.0

    def __post_init__(self):
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if not 0 <= self.jitter_ratio < 1:
            raise ValueError("jitter_ratio must be in [0, 1)")

    def delay_ms(self, retry_count: int) -> int:
        raw = self.base_delay_ms * (self.backoff_multiplier ** retry_count)
        return int(min(self.max_delay_ms, raw))

    def jittered_delay_ms(self, retry_count: int, rng: Any = random) -> int:
        delay = self.delay_ms(retry_count)
        if not self.jitter_ratio:
            return delay
        spread = delay * self.jitter_ratio
        jittered = delay + rng.uniform(-spread, spread)
        return int(max(0, min(self.max_delay_ms, jittered)))

    def can_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_attempts

    def next_retry_at(self, retry_count: int, now: datetime, rng: Any = random) -> datetime:
        return now + timedelta(milliseconds=self.jittered_delay_ms(retry_count, rng))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "backoff_multiplier": self.backoff_multiplier,
            "max_delay_ms": self.max_delay_ms,
            "jitter_ratio": self.jitter_ratio,
        }
