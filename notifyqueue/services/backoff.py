"""Retry backoff policy for failed deliveries.

Exponential growth with a cap, plus bounded random jitter so that many
records failing together do not all come due at the same instant.
"""

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from notifyqueue.config import Settings, get_settings

# Keeps 2 ** retry_count finite for absurd retry budgets
_MAX_EXPONENT = 32


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with cap and symmetric jitter.

    Attributes:
        base_seconds: Delay before the first retry
        cap_seconds: Upper bound on the un-jittered delay
        jitter: Fraction of the delay added or removed at random, in [0, 1)
    """

    base_seconds: float = 60.0
    cap_seconds: float = 3600.0
    jitter: float = 0.2
    rng: random.Random = field(
        default_factory=random.Random, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if self.base_seconds <= 0:
            raise ValueError("base_seconds must be positive")
        if self.cap_seconds < self.base_seconds:
            raise ValueError("cap_seconds must be >= base_seconds")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "BackoffPolicy":
        settings = settings or get_settings()
        return cls(
            base_seconds=settings.RETRY_BACKOFF_BASE_SECONDS,
            cap_seconds=settings.RETRY_BACKOFF_CAP_SECONDS,
            jitter=settings.RETRY_BACKOFF_JITTER,
        )

    def base_delay(self, retry_count: int) -> float:
        """Un-jittered delay in seconds for the given number of prior failures."""
        exponent = min(max(retry_count, 0), _MAX_EXPONENT)
        return min(self.cap_seconds, self.base_seconds * (2**exponent))

    def delay(self, retry_count: int) -> float:
        """Jittered delay in seconds, within [0, cap * (1 + jitter)]."""
        delay = self.base_delay(retry_count)
        spread = delay * self.jitter
        return max(0.0, delay + self.rng.uniform(-spread, spread))

    def next_retry_at(self, retry_count: int, now: datetime) -> datetime:
        """Time at which a record that has failed retry_count times before may retry."""
        return now + timedelta(seconds=self.delay(retry_count))


def next_retry_at(
    retry_count: int,
    now: datetime,
    policy: BackoffPolicy | None = None,
) -> datetime:
    """Compute the next retry time using the configured policy."""
    policy = policy or BackoffPolicy.from_settings()
    return policy.next_retry_at(retry_count, now)
