"""
Retry backoff policy for the reconciliation loop.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff: base, 2*base, 4*base, ... capped at ``maximum``."""

    base: timedelta = timedelta(minutes=1)
    maximum: timedelta = timedelta(hours=1)

    def delay(self, retry_count: int) -> timedelta:
        if retry_count <= 0:
            return timedelta(0)
        # Cap the exponent so large retry counts cannot overflow
        exponent = min(retry_count - 1, 32)
        return min(self.maximum, self.base * (2 ** exponent))

    def next_attempt(self, retry_count: int, now: datetime) -> datetime:
        return now + self.delay(retry_count)
