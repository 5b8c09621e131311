"""Exponential backoff policy for failed deliveries."""

import random
from dataclasses import dataclass
from datetime import timedelta

DEFAULT_BASE_DELAY = 30.0


@dataclass(frozen=True)
class RetryPolicy:
    """Computes the delay before the n-th retry.

    The delay is ``base_delay * 2 ** (attempt - 1)`` seconds: 30s, 60s, 120s, ...
    with the default base. With ``jitter`` > 0 a uniform random amount in
    ``[0, jitter * delay]`` is added, which spreads out retries of messages that
    failed together but makes exact timings non-deterministic. ``max_delay``
    caps the delay before jitter is applied.
    """

    base_delay: float = DEFAULT_BASE_DELAY
    jitter: float = 0.0
    max_delay: float | None = None

    def __post_init__(self) -> None:
        if self.base_delay <= 0:
            raise ValueError(f"base_delay must be positive, got {self.base_delay}")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError(f"jitter must be between 0 and 1, got {self.jitter}")
        if self.max_delay is not None and self.max_delay < self.base_delay:
            raise ValueError("max_delay must not be smaller than base_delay")

    def next_delay(self, attempt_number: int) -> timedelta:
        """Return the delay before retry number attempt_number (1-based).

        Raises:
            ValueError: If attempt_number is less than 1.
        """
        if attempt_number < 1:
            raise ValueError(f"attempt_number must be >= 1, got {attempt_number}")

        seconds = self.base_delay * (2 ** (attempt_number - 1))
        if self.max_delay is not None:
            seconds = min(seconds, self.max_delay)
        if self.jitter:
            seconds += random.uniform(0.0, self.jitter * seconds)
        return timedelta(seconds=seconds)
