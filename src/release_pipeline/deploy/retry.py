"""Bounded exponential backoff."""

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for a call site.

    Attributes:
        max_attempts: Total attempts including the first one.
        base_delay: Delay before the second attempt, in seconds.
        max_delay: Upper bound on any single delay.
        jitter: Apply full jitter to each delay.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    def backoff(self, attempt: int) -> float:
        """Delay after the given failed attempt (0-indexed).

        Uses exponential backoff with optional full jitter to prevent
        thundering herd problems.
        """
        capped = min(self.base_delay * (2 ** attempt), self.max_delay)
        if self.jitter:
            return random.uniform(0, capped)
        return capped
