"""
Reconnection backoff policy.

Delays are computed functionally: advance() takes a BackoffState and
returns the next delay together with a new state, so the caller owns the
only copy and nothing is mutated behind its back. All delays are integer
milliseconds.
"""

import random
from dataclasses import dataclass, replace

from rabbitmq_producer.queues.config import BackoffType

_rng = random.Random()


@dataclass(frozen=True)
class BackoffState:
    """
    Position in a backoff sequence.

    Attributes:
        type: Strategy used to compute delays
        min_delay: Smallest delay in milliseconds
        max_delay: Largest delay in milliseconds
        attempt: Failed attempts since the last reset
        current: Previous delay (exponential strategies only)
        lower: Floor of the jitter window (random_exponential only)
    """

    type: BackoffType
    min_delay: int
    max_delay: int
    attempt: int = 0
    current: int | None = None
    lower: int | None = None

    @property
    def stopped(self) -> bool:
        """True when retrying is disabled and a failure must be fatal."""
        return self.type is BackoffType.STOP


def new_backoff(
    type: BackoffType = BackoffType.RANDOM_EXPONENTIAL,
    min_delay: int = 1_000,
    max_delay: int = 30_000,
) -> BackoffState:
    """Create a fresh backoff state."""
    if min_delay < 0 or max_delay < 0:
        raise ValueError("backoff delays must be non-negative")
    if min_delay > max_delay:
        raise ValueError("min_delay must not be greater than max_delay")

    if type is BackoffType.RANDOM_EXPONENTIAL:
        return BackoffState(
            type=type,
            min_delay=min_delay,
            max_delay=max_delay,
            current=min_delay,
            lower=max(min_delay, max_delay // 3),
        )
    return BackoffState(type=type, min_delay=min_delay, max_delay=max_delay)


def advance(
    state: BackoffState, rng: random.Random | None = None
) -> tuple[int, BackoffState]:
    """
    Compute the next delay.

    Args:
        state: Current backoff state
        rng: Random source for the random strategies (module random if None)

    Returns:
        Tuple of (delay in milliseconds, next state)

    Raises:
        ValueError: If the strategy is stop
    """
    rng = rng or _rng
    attempt = state.attempt + 1

    if state.type is BackoffType.STOP:
        raise ValueError("backoff is disabled (stop strategy)")

    if state.type is BackoffType.RANDOM:
        delay = rng.randint(state.min_delay, state.max_delay)
        return delay, replace(state, attempt=attempt)

    if state.type is BackoffType.EXPONENTIAL:
        if state.current is None:
            delay = state.min_delay
        else:
            delay = min(state.current * 2, state.max_delay)
        return delay, replace(state, attempt=attempt, current=delay)

    # random_exponential: grow by up to 3x, never drop below the jitter floor
    prev = state.current
    low = min(prev, state.lower)
    high = min(prev * 3, state.max_delay)
    delay = rng.randint(low, max(low, high))
    return delay, replace(state, attempt=attempt, current=delay)


def reset(state: BackoffState) -> BackoffState:
    """Return the state a freshly constructed policy would have."""
    return new_backoff(state.type, state.min_delay, state.max_delay)
