from __future__ import annotations

import random
from dataclasses import dataclass, replace
from typing import Callable

JitterFunc = Callable[[float, float], float]


@dataclass(slots=True, frozen=True)
class RetryState:
    attempt: int = 0
    max_attempts: int = 3
    last_error: BaseException | None = None

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def advanced(self, error: BaseException) -> "RetryState":
        return replace(self, attempt=self.attempt + 1, last_error=error)


def exponential_backoff_seconds(
    attempt: int,
    *,
    base_seconds: float = 1.0,
    max_seconds: float | None = None,
    jitter_seconds: float = 1.0,
    jitter: JitterFunc = random.uniform,
) -> float:
    delay = base_seconds * (2 ** max(0, attempt))
    if max_seconds is not None:
        delay = min(max_seconds, delay)
    return delay + jitter(0.0, jitter_seconds)


def linear_backoff_seconds(
    attempt: int,
    *,
    step_seconds: float = 1.0,
    jitter_seconds: float = 0.5,
    jitter: JitterFunc = random.uniform,
) -> float:
    return step_seconds * (max(0, attempt) + 1) + jitter(0.0, jitter_seconds)
