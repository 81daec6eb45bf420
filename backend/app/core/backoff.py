from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffPolicy:
    """Capped exponential backoff with a bounded attempt count."""

    max_attempts: int = 3
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        # attempt is 1-based: delay after the first failure is base_delay
        if attempt < 1:
            return 0.0
        return min(self.max_delay, self.base_delay * self.factor ** (attempt - 1))

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts
