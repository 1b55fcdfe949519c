"""Reconnection policy for the session supervisor."""

import random
from dataclasses import dataclass, field

from ..core.exceptions import QuotaError


@dataclass
class RetryPolicy:
    """Exponential backoff with jitter and a capped attempt count."""

    max_attempts: int = 5  # Consecutive failed attempts before giving up
    base_delay: float = 0.5
    max_delay: float = 10.0
    multiplier: float = 2.0
    jitter: float = 0.1  # Fraction of the delay randomized in both directions
    max_quota_delay: float = 60.0  # Longer provider-mandated waits are not honored
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = min(self.max_delay, self.base_delay * (self.multiplier ** max(0, attempt - 1)))
        if self.jitter and delay > 0:
            spread = delay * self.jitter
            delay += self.rng.uniform(-spread, spread)
        return max(0.0, delay)

    def delay_for(self, attempt: int, error: Exception) -> float | None:
        """Delay before the next attempt, or None if ``error`` must propagate.

        Quota errors wait for the provider-specified delay when there is one.
        """
        if isinstance(error, QuotaError) and error.retry_after is not None:
            if error.retry_after > self.max_quota_delay:
                return None
            return max(0.0, error.retry_after)
        return self.backoff(attempt)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts
