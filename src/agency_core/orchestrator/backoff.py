"""Retry delay policy for failed launch attempts."""

from __future__ import annotations

import random
from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Capped exponential backoff with additive jitter.

    ``delay(n)`` is ``min(base * multiplier ** (n - 1), max_delay)`` plus
    ``uniform(0, jitter_fraction * delay)``. The random source is injected so
    tests can pin the jitter; a zero ``jitter_fraction`` never consults it.
    """

    base_seconds: float = 30.0
    multiplier: float = 2.0
    jitter_fraction: float = 0.1
    max_delay_seconds: float = 300.0
    max_retries: int = 5
    rng: random.Random = field(
        default_factory=random.Random,  # noqa: S311
        compare=False,
        repr=False,
    )

    def delay(self, failure_count: int) -> float | None:
        """Return seconds to wait before retry ``failure_count``, or None once exhausted."""

        if failure_count < 1 or failure_count > self.max_retries:
            return None
        scaled = self.base_seconds * self.multiplier ** (failure_count - 1)
        capped = min(scaled, self.max_delay_seconds)
        if self.jitter_fraction <= 0:
            return capped
        return capped + self.rng.uniform(0, self.jitter_fraction * capped)
