"""Delay schedule and attempt budget for caller-driven connect retries."""

import random
from typing import Optional

from blesession.ble.constants import BLEConfig


def _require(valid: bool, name: str, value, expected: str) -> None:
    if not valid:
        raise ValueError(f"Connect retry {name} must be {expected}, got {value!r}")


class BackoffPolicy:
    """
    How long `retry()` waits before dialing a peripheral again, and how often it may.

    Retry ``n`` (counted from zero since the last successful connection) waits
    ``initial_delay * multiplier ** n`` seconds, capped at `max_delay` and then
    spread by up to `jitter_ratio` of itself in either direction so that
    peripherals dropped together are not redialed in lockstep. Once
    `max_retries` retries have been taken the policy is exhausted until
    `reset()`; a plain `connect()` never consults it.
    """

    def __init__(
        self,
        *,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        multiplier: float = 2.0,
        jitter_ratio: float = 0.1,
        max_retries: Optional[int] = None,
        random_source=None,
    ):
        _require(initial_delay >= 0, "initial_delay", initial_delay, "zero or more seconds")
        _require(max_delay >= initial_delay, "max_delay", max_delay, f"at least initial_delay ({initial_delay})")
        _require(multiplier >= 1.0, "multiplier", multiplier, "1.0 or more")
        _require(0.0 <= jitter_ratio <= 1.0, "jitter_ratio", jitter_ratio, "within [0.0, 1.0]")
        _require(max_retries is None or max_retries >= 0, "max_retries", max_retries, "None or zero or more")
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter_ratio = jitter_ratio
        self.max_retries = max_retries
        self._random = random_source or random
        self._taken = 0

    @property
    def attempts(self) -> int:
        """Retries taken since the last successful connection."""
        return self._taken

    @property
    def exhausted(self) -> bool:
        return self.max_retries is not None and self._taken >= self.max_retries

    def delay_for(self, retry: int) -> float:
        """Jittered wait in seconds before retry number `retry` (zero-based)."""
        base = min(self.initial_delay * self.multiplier**retry, self.max_delay)
        spread = base * self.jitter_ratio
        return max(0.0, base + self._random.uniform(-spread, spread))

    def take(self) -> float:
        """Use up one retry and return the wait before it. Callers check `exhausted` first."""
        delay = self.delay_for(self._taken)
        self._taken += 1
        return delay

    def reset(self) -> None:
        """Give back the whole budget; called when a connection succeeds."""
        self._taken = 0


class RetryPolicy:
    """Factories for the per-peripheral `BackoffPolicy` the engine builds on first use."""

    @staticmethod
    def connect_retry() -> BackoffPolicy:
        """Default schedule, taken from the RETRY_* settings of BLEConfig."""
        return BackoffPolicy(
            initial_delay=BLEConfig.RETRY_INITIAL_DELAY,
            max_delay=BLEConfig.RETRY_MAX_DELAY,
            multiplier=BLEConfig.RETRY_BACKOFF,
            jitter_ratio=BLEConfig.RETRY_JITTER_RATIO,
            max_retries=BLEConfig.RETRY_MAX_ATTEMPTS,
        )

    @staticmethod
    def immediate() -> BackoffPolicy:
        """Redial at once, as often as asked."""
        return BackoffPolicy(initial_delay=0.0, max_delay=0.0, jitter_ratio=0.0)


__all__ = ["BackoffPolicy", "RetryPolicy"]
