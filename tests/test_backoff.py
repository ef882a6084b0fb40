"""
Tests for reconnect backoff and outbound send throttling.

Covers:
- Exponential delay with seeded jitter
- Server-provided delay floor and max clamp
- Invalid Session wait window
- Token bucket budget for Gateway sends
"""

from __future__ import annotations

import random

import pytest

from nyxcord.backoff import (
    BackoffConfig,
    BackoffState,
    SendThrottler,
    SendThrottlerConfig,
    compute_backoff_delay,
    invalid_session_delay_ms,
)
from nyxcord.errors import ValidationError


class FakeClock:
    def __init__(self, now_ms: int = 1_000_000) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


class TestBackoffConfig:
    """Tests for BackoffConfig."""

    def test_default_values(self) -> None:
        config = BackoffConfig()
        assert config.base_delay_ms == 5000
        assert config.max_delay_ms == 60000
        assert config.multiplier == 2.0
        assert config.jitter_factor == 0.25

    def test_max_below_base(self) -> None:
        with pytest.raises(ValidationError):
            BackoffConfig(base_delay_ms=1000, max_delay_ms=500)

    def test_jitter_out_of_range(self) -> None:
        with pytest.raises(ValidationError):
            BackoffConfig(jitter_factor=1.0)


class TestBackoffState:
    """Tests for BackoffState."""

    def test_record_and_reset(self) -> None:
        state = BackoffState()

        state.record_error()
        state.record_error()
        assert state.attempt == 2
        assert state.consecutive_errors == 2
        assert state.last_error_time_ms > 0

        state.reset()
        assert state.attempt == 0
        assert state.consecutive_errors == 0


class TestComputeBackoffDelay:
    """Tests for compute_backoff_delay."""

    def test_first_attempt_immediate(self) -> None:
        assert compute_backoff_delay(BackoffConfig(), BackoffState()) == 0

    def test_exponential_with_seeded_jitter(self) -> None:
        config = BackoffConfig(base_delay_ms=1000, max_delay_ms=60000)
        state = BackoffState(attempt=3)

        delay = compute_backoff_delay(config, state, rng=random.Random(1))

        expected = int(4000 * random.Random(1).uniform(0.75, 1.25))
        assert delay == expected
        assert 3000 <= delay <= 5000

    def test_same_seed_same_delay(self) -> None:
        config = BackoffConfig()
        state = BackoffState(attempt=2)

        first = compute_backoff_delay(config, state, rng=random.Random(99))
        second = compute_backoff_delay(config, state, rng=random.Random(99))

        assert first == second

    def test_clamped_to_max(self) -> None:
        config = BackoffConfig(base_delay_ms=1000, max_delay_ms=60000)
        state = BackoffState(attempt=10)

        assert compute_backoff_delay(config, state, rng=random.Random(3)) == 60000

    def test_retry_after_is_floor(self) -> None:
        config = BackoffConfig(base_delay_ms=1000, max_delay_ms=60000)
        state = BackoffState(attempt=1)

        delay = compute_backoff_delay(config, state, retry_after_ms=3000, rng=random.Random(3))

        assert delay == 3000

    def test_no_jitter(self) -> None:
        config = BackoffConfig(base_delay_ms=1000, jitter_factor=0.0)
        assert compute_backoff_delay(config, BackoffState(attempt=2)) == 2000


class TestInvalidSessionDelay:
    def test_within_window(self) -> None:
        rng = random.Random(5)
        for _ in range(50):
            assert 1000 <= invalid_session_delay_ms(rng) <= 5000


class TestSendThrottler:
    """Tests for the outbound event budget."""

    def test_budget_exhausted(self) -> None:
        clock = FakeClock()
        throttler = SendThrottler(
            SendThrottlerConfig(max_events=2, window_ms=1000), _time_fn=clock
        )

        assert throttler.consume()
        assert throttler.consume()
        assert not throttler.consume()

        wait_ms = throttler.get_wait_time_ms()
        assert 500 <= wait_ms <= 501

    def test_refills_over_time(self) -> None:
        clock = FakeClock()
        throttler = SendThrottler(
            SendThrottlerConfig(max_events=2, window_ms=1000), _time_fn=clock
        )
        throttler.consume(2)

        clock.now_ms += 600

        assert throttler.get_wait_time_ms() == 0
        assert throttler.consume()
        assert not throttler.consume()

    def test_refill_capped_at_capacity(self) -> None:
        clock = FakeClock()
        throttler = SendThrottler(
            SendThrottlerConfig(max_events=120, window_ms=60000, reserved=5), _time_fn=clock
        )

        clock.now_ms += 10 * 60000

        status = throttler.get_status()
        assert throttler.capacity == 115
        assert status["available_tokens"] == 115
        assert status["capacity"] == 115

    def test_reset(self) -> None:
        clock = FakeClock()
        throttler = SendThrottler(
            SendThrottlerConfig(max_events=3, window_ms=1000), _time_fn=clock
        )
        throttler.consume(3)

        throttler.reset()

        assert throttler.consume(3)

    def test_reserved_must_leave_budget(self) -> None:
        with pytest.raises(ValidationError):
            SendThrottlerConfig(max_events=10, reserved=10)
