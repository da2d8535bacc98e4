"""
Retry policy value object.

Purpose:
- Centralize exponential backoff math
- Keep reducer and catch-up scheduler free of ad-hoc delay arithmetic
- Allow deterministic retry decisions in tests

This module contains NO timers, NO async, NO side effects.
"""
from __future__ import annotations

from dataclasses import dataclass, replace

from constants import MAX_BACKOFF_EXPONENT


# =============================================================================
# Delay Calculation
# =============================================================================

def backoff_delay_ms(*, base_ms: int, max_ms: int, attempt: int) -> int:
    """
    delay(n) = min(base * 2**(n-1), max)

    attempt is 1-based; values below 1 are treated as 1.
    The exponent is capped so very large attempt numbers cannot overflow.
    """
    n = max(attempt, 1)
    exponent = min(n - 1, MAX_BACKOFF_EXPONENT)
    return min(base_ms * (2 ** exponent), max_ms)


# =============================================================================
# Retry State
# =============================================================================

@dataclass(frozen=True)
class RetryPolicy:
    """
    Immutable retry attempt counter with its backoff parameters.

    Semantics:
    - attempt == 0 means no failure since the last success/reset.
    - attempt >= 1 is the number of consecutive failures.
    - reset_after, when set, wraps the counter back to 1 once it would
      exceed that many attempts (long-lived retry loops never grow unbounded).
    """
    base_ms: int
    max_ms: int
    attempt: int = 0
    reset_after: int | None = None

    def delay_ms(self) -> int:
        """Delay before the next retry for the current attempt count."""
        return backoff_delay_ms(
            base_ms=self.base_ms,
            max_ms=self.max_ms,
            attempt=self.attempt,
        )

    def next_attempt(self) -> RetryPolicy:
        """Record one more failure."""
        attempt = self.attempt + 1
        if self.reset_after is not None and attempt > self.reset_after:
            attempt = 1
        return replace(self, attempt=attempt)

    def reset(self) -> RetryPolicy:
        """Returns a fresh counter with the same parameters."""
        return replace(self, attempt=0)
