"""Retry policy and exponential backoff."""

from __future__ import annotations

import random
from dataclasses import dataclass

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_BASE_SECONDS = 30.0
DEFAULT_TIMEOUT_SECONDS = 600


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Per-handler retry and deadline declaration."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1.")
        if self.backoff_base_seconds < 0:
            raise ValueError("backoff_base_seconds must be >= 0.")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0.")


DEFAULT_RETRY_POLICY = RetryPolicy()


def backoff_floor_seconds(*, attempts: int, base_seconds: float) -> float:
    """Deterministic part of the delay: `base * 2^attempts`."""

    return base_seconds * (2 ** max(attempts, 0))


def compute_backoff_seconds(
    *,
    attempts: int,
    base_seconds: float,
    rng: random.Random,
) -> float:
    """Delay before the next attempt: `base * 2^attempts + jitter(0..base)`."""

    return backoff_floor_seconds(attempts=attempts, base_seconds=base_seconds) + rng.uniform(
        0,
        base_seconds,
    )
