"""Retry backoff policy: exponential growth with symmetric jitter."""

import random
from dataclasses import dataclass, field

JITTER_RATIO = 0.2


@dataclass
class BackoffPolicy:
    """Computes the delay before retry attempt N.

    delay = min(max_ms, base_ms * 2 ** (attempt - 1)), scaled by a uniform
    factor in [1 - jitter, 1 + jitter], never below min_ms. Jitter keeps many
    assets that failed together (e.g. a network drop mid-batch) from retrying
    in lockstep.
    """

    base_ms: float = 1_000
    max_ms: float = 30_000
    min_ms: float = 1_000
    jitter: float = JITTER_RATIO
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def base_delay_ms(self, attempt: int) -> float:
        """Return the un-jittered delay for an attempt (1-based)."""
        exponent = max(attempt, 1) - 1
        # Cap the exponent so huge attempt numbers cannot overflow
        if exponent > 62:
            return float(self.max_ms)
        return float(min(self.max_ms, self.base_ms * 2**exponent))

    def delay_ms(self, attempt: int) -> float:
        """Return the jittered delay in milliseconds for an attempt (1-based)."""
        base = self.base_delay_ms(attempt)
        jittered = base * (1 + self.rng.uniform(-self.jitter, self.jitter))
        return max(float(self.min_ms), jittered)

    def delay_seconds(self, attempt: int) -> float:
        return self.delay_ms(attempt) / 1000
