"""
Reconnect backoff and outbound Gateway send throttling.

Discord limits:
- A Gateway connection may send at most 120 events per 60 seconds
  (heartbeats are budgeted separately and bypass the throttler)
- Reconnects use exponential backoff with jitter so a fleet of clients
  does not hammer the Gateway after an outage

Both helpers accept a seeded RNG / injected clock for deterministic tests.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from nyxcord.errors import ValidationError

if TYPE_CHECKING:
    from collections.abc import Callable


@dataclass
class BackoffConfig:
    """Configuration for exponential reconnect backoff."""

    base_delay_ms: int = 5000
    max_delay_ms: int = 60000
    multiplier: float = 2.0
    jitter_factor: float = 0.25  # 0.25 = ±25% jitter
    max_retries: int = 5

    def __post_init__(self) -> None:
        if self.base_delay_ms < 0:
            msg = f"base_delay_ms must be >= 0, got {self.base_delay_ms}"
            raise ValidationError(msg)
        if self.max_delay_ms < self.base_delay_ms:
            msg = (
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"base_delay_ms ({self.base_delay_ms})"
            )
            raise ValidationError(msg)
        if not 0.0 <= self.jitter_factor < 1.0:
            msg = f"jitter_factor must be in [0, 1), got {self.jitter_factor}"
            raise ValidationError(msg)


@dataclass
class BackoffState:
    """Mutable state for backoff tracking."""

    attempt: int = 0
    last_error_time_ms: int = 0
    consecutive_errors: int = 0

    def reset(self) -> None:
        """Reset after a successful (re)connect."""
        self.attempt = 0
        self.consecutive_errors = 0

    def record_error(self) -> None:
        self.attempt += 1
        self.consecutive_errors += 1
        self.last_error_time_ms = int(time.time() * 1000)


def compute_backoff_delay(
    config: BackoffConfig,
    state: BackoffState,
    retry_after_ms: int | None = None,
    *,
    rng: random.Random | None = None,
) -> int:
    """
    Compute reconnect delay with exponential increase and jitter.

    The first attempt after a clean disconnect has no delay. A server
    provided delay (retry_after_ms) acts as a floor.

    Args:
        config: Backoff configuration.
        state: Current backoff state.
        retry_after_ms: Server-provided minimum delay.
        rng: Optional seeded Random instance for deterministic jitter.

    Returns:
        Delay in milliseconds before the next attempt.
    """
    if state.attempt == 0:
        return 0

    delay = config.base_delay_ms * (config.multiplier ** (state.attempt - 1))

    jitter_min = 1.0 - config.jitter_factor
    jitter_max = 1.0 + config.jitter_factor
    source = rng if rng is not None else random
    delay = delay * source.uniform(jitter_min, jitter_max)

    delay = min(delay, config.max_delay_ms)

    if retry_after_ms is not None and retry_after_ms > 0:
        delay = max(delay, retry_after_ms)

    return int(delay)


def invalid_session_delay_ms(rng: random.Random | None = None) -> int:
    """Random 1-5 s wait required before re-identifying after Invalid Session."""
    source = rng if rng is not None else random
    return int(source.uniform(1000, 5000))


@dataclass
class SendThrottlerConfig:
    """Outbound Gateway event budget."""

    max_events: int = 120
    window_ms: int = 60000
    # Slots held back for heartbeats and resumes.
    reserved: int = 0

    def __post_init__(self) -> None:
        if self.max_events <= 0:
            msg = f"max_events must be > 0, got {self.max_events}"
            raise ValidationError(msg)
        if self.window_ms <= 0:
            msg = f"window_ms must be > 0, got {self.window_ms}"
            raise ValidationError(msg)
        if not 0 <= self.reserved < self.max_events:
            msg = f"reserved must be in [0, max_events), got {self.reserved}"
            raise ValidationError(msg)


@dataclass
class SendThrottler:
    """
    Token bucket limiting outbound Gateway events.

    Tokens refill continuously at (max_events - reserved) per window.
    """

    config: SendThrottlerConfig = field(default_factory=SendThrottlerConfig)

    _tokens: float = field(default=0.0)
    _last_update_ms: int = field(default=0)

    _time_fn: Callable[[], int] | None = field(default=None)

    def __post_init__(self) -> None:
        self._tokens = float(self.capacity)
        self._last_update_ms = self._now_ms()

    def _now_ms(self) -> int:
        """Get current time in milliseconds."""
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    @property
    def capacity(self) -> int:
        return self.config.max_events - self.config.reserved

    @property
    def rate_per_ms(self) -> float:
        return self.capacity / self.config.window_ms

    def _refill_tokens(self, now_ms: int) -> None:
        elapsed_ms = now_ms - self._last_update_ms
        if elapsed_ms <= 0:
            return
        self._tokens = min(self._tokens + elapsed_ms * self.rate_per_ms, float(self.capacity))
        self._last_update_ms = now_ms

    def consume(self, count: int = 1) -> bool:
        """
        Take tokens for sending events.

        Returns:
            True if tokens were consumed, False if the budget is exhausted.
        """
        self._refill_tokens(self._now_ms())
        if self._tokens >= count:
            self._tokens -= count
            return True
        return False

    def get_wait_time_ms(self, count: int = 1) -> int:
        """Milliseconds until count tokens are available (0 if now)."""
        self._refill_tokens(self._now_ms())
        if self._tokens >= count:
            return 0
        needed = count - self._tokens
        return int(needed / self.rate_per_ms) + 1

    def reset(self) -> None:
        self._tokens = float(self.capacity)
        self._last_update_ms = self._now_ms()

    def get_status(self) -> dict[str, float | int]:
        """Get current throttler status for observability."""
        self._refill_tokens(self._now_ms())
        return {
            "available_tokens": round(self._tokens, 2),
            "capacity": self.capacity,
            "window_ms": self.config.window_ms,
        }
