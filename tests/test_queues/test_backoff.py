"""Tests for the reconnection backoff policy."""

import random

import pytest

from rabbitmq_producer.queues.backoff import BackoffState, advance, new_backoff, reset
from rabbitmq_producer.queues.config import BackoffType


def _delays(state: BackoffState, count: int, rng: random.Random | None = None) -> list[int]:
    delays = []
    for _ in range(count):
        delay, state = advance(state, rng)
        delays.append(delay)
    return delays


class TestExponentialBackoff:
    """Tests for the exponential strategy."""

    def test_first_delay_is_min(self):
        state = new_backoff(BackoffType.EXPONENTIAL, 1_000, 30_000)
        delay, _ = advance(state)
        assert delay == 1_000

    def test_delay_doubles(self):
        state = new_backoff(BackoffType.EXPONENTIAL, 1_000, 30_000)
        assert _delays(state, 4) == [1_000, 2_000, 4_000, 8_000]

    def test_caps_at_max_delay(self):
        state = new_backoff(BackoffType.EXPONENTIAL, 1_000, 30_000)
        assert _delays(state, 7) == [1_000, 2_000, 4_000, 8_000, 16_000, 30_000, 30_000]

    def test_reset_starts_from_min_again(self):
        state = new_backoff(BackoffType.EXPONENTIAL, 1_000, 30_000)
        for _ in range(3):
            _, state = advance(state)
        assert state.attempt == 3

        state = reset(state)
        assert state.attempt == 0
        delay, _ = advance(state)
        assert delay == 1_000

    def test_advance_does_not_mutate_input(self):
        state = new_backoff(BackoffType.EXPONENTIAL, 1_000, 30_000)
        advance(state)
        advance(state)
        assert state.attempt == 0
        assert advance(state)[0] == 1_000


class TestRandomBackoff:
    """Tests for the random strategies."""

    def test_random_stays_within_bounds(self):
        rng = random.Random(42)
        state = new_backoff(BackoffType.RANDOM, 500, 2_000)
        for delay in _delays(state, 200, rng):
            assert 500 <= delay <= 2_000

    def test_random_exponential_stays_within_bounds(self):
        rng = random.Random(7)
        state = new_backoff(BackoffType.RANDOM_EXPONENTIAL, 1_000, 30_000)
        for delay in _delays(state, 200, rng):
            assert 1_000 <= delay <= 30_000

    def test_random_exponential_first_delay_window(self):
        """The first delay is drawn between min and three times min."""
        rng = random.Random(1)
        for _ in range(50):
            state = new_backoff(BackoffType.RANDOM_EXPONENTIAL, 1_000, 30_000)
            delay, _ = advance(state, rng)
            assert 1_000 <= delay <= 3_000

    def test_random_exponential_reset(self):
        rng = random.Random(3)
        state = new_backoff(BackoffType.RANDOM_EXPONENTIAL, 1_000, 30_000)
        for _ in range(10):
            _, state = advance(state, rng)

        fresh = reset(state)
        assert fresh == new_backoff(BackoffType.RANDOM_EXPONENTIAL, 1_000, 30_000)

    def test_attempt_counter_increments(self):
        state = new_backoff(BackoffType.RANDOM, 0, 10)
        assert state.attempt == 0
        _, state = advance(state)
        assert state.attempt == 1
        _, state = advance(state)
        assert state.attempt == 2


class TestStopBackoff:
    """Tests for the stop strategy."""

    def test_stopped_flag(self):
        assert new_backoff(BackoffType.STOP).stopped
        assert not new_backoff(BackoffType.EXPONENTIAL).stopped

    def test_advance_refuses(self):
        with pytest.raises(ValueError, match="disabled"):
            advance(new_backoff(BackoffType.STOP))


class TestBackoffValidation:
    """Tests for constructor validation."""

    def test_min_greater_than_max(self):
        with pytest.raises(ValueError):
            new_backoff(BackoffType.EXPONENTIAL, 5_000, 1_000)

    def test_negative_delay(self):
        with pytest.raises(ValueError):
            new_backoff(BackoffType.RANDOM, -1, 1_000)
