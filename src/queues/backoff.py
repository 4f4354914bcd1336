"""
Exponential backoff for retry loops and persisted retry schedules.

Used two ways:
- in-memory, by worker loops that must back off after a failed poll
  (``next_delay`` / ``reset``);
- statelessly, by the announcement outbox, whose attempt counter lives in
  the database row (``delay_for_attempt``).
"""

import random


class ExponentialBackoff:
    """
    Exponential backoff with jitter.

    Computes delays as: min(base * multiplier^attempt, max_delay) ± jitter.

    Usage:
        backoff = ExponentialBackoff(base_delay=1.0, max_delay=60.0)
        while not stopping:
            try:
                await drain_once()
                backoff.reset()
            except Exception:
                await asyncio.sleep(backoff.next_delay())
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        multiplier: float = 2.0,
        jitter_range: float = 0.5,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter_range = jitter_range
        self._attempt = 0

    @property
    def attempt(self) -> int:
        """Current attempt count."""
        return self._attempt

    def delay_for_attempt(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based), with jitter."""
        delay = min(
            self.base_delay * (self.multiplier ** max(attempt, 0)),
            self.max_delay,
        )
        jitter = delay * random.uniform(-self.jitter_range, self.jitter_range)
        return max(0.0, delay + jitter)

    def next_delay(self) -> float:
        """Return the next delay and advance the attempt counter."""
        delay = self.delay_for_attempt(self._attempt)
        self._attempt += 1
        return delay

    def reset(self) -> None:
        """Reset the attempt counter after a successful operation."""
        self._attempt = 0
