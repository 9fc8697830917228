"""
Retry policy driven by error classification.

One policy is applied uniformly to every request by the orchestrator,
rather than each endpoint carrying its own retry loop:

- ``RETRY_WITH_BACKOFF`` failures are retried with exponential backoff
  until ``max_attempts`` is spent.
- Everything else (auth, validation, unknown) stops immediately and does
  not consume retry budget.
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from qbolink.errors import Classification


@dataclass
class RetryPolicy:
    """Bounded exponential backoff.

    ``max_attempts`` counts the first try, so the default of 3 means one
    call plus two retries.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True

    # If True, a server-provided Retry-After wins over the computed delay
    respect_retry_after: bool = True

    def __post_init__(self) -> None:
        self.max_attempts = int(self.max_attempts)
        self.base_delay = float(self.base_delay)
        self.max_delay = float(self.max_delay)
        self.exponential_base = float(self.exponential_base)
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")

    def should_retry(self, classification: Classification, attempt: int) -> bool:
        """Whether to try again after ``attempt`` (1-indexed) failed."""
        return classification.retryable and attempt < self.max_attempts

    def get_delay(self, attempt: int, classification: Classification | None = None) -> float:
        """Delay before the retry that follows ``attempt`` (1-indexed).

        Uses equal jitter: half the exponential delay is fixed, the other
        half is random, so concurrent retries spread out.
        """
        if (
            self.respect_retry_after
            and classification is not None
            and classification.retry_after is not None
        ):
            return min(classification.retry_after, self.max_delay)

        delay = min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        if self.jitter and delay > 0:
            half = delay / 2
            return half + random.uniform(0, half)
        return delay
