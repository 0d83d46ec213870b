"""Exponential backoff for resource fetches and metrics backend calls."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from variant_autoscaling.errors import PermanentError, RetryExhaustedError, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    duration: float  # initial delay, seconds
    factor: float = 2.0
    jitter: float = 0.0  # fraction of the delay added at random
    steps: int = 5  # maximum attempts

    def __post_init__(self) -> None:
        if self.duration < 0:
            raise ValueError("duration must be >= 0")
        if self.factor < 1:
            raise ValueError("factor must be >= 1")
        if self.jitter < 0:
            raise ValueError("jitter must be >= 0")
        if self.steps < 1:
            raise ValueError("steps must be >= 1")

    def delays(self, rng: Callable[[], float] = random.random) -> list[float]:
        """Sleep before each retry (one fewer than `steps`)."""
        out: list[float] = []
        delay = self.duration
        for _ in range(self.steps - 1):
            out.append(delay + (delay * self.jitter * rng() if self.jitter else 0.0))
            delay *= self.factor
        return out


STANDARD_BACKOFF = RetryPolicy(duration=0.1, factor=2.0, jitter=0.1, steps=5)
RECONCILE_BACKOFF = RetryPolicy(duration=0.5, factor=2.0, steps=5)
# 5s, 10s, 20s, 40s, 80s between six attempts
PROMETHEUS_BACKOFF = RetryPolicy(duration=5.0, factor=2.0, jitter=0.1, steps=6)


def retry_call(
    fn: Callable[[], T],
    policy: RetryPolicy = STANDARD_BACKOFF,
    resource_kind: str = "resource",
    is_transient: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    rng: Callable[[], float] = random.random,
) -> T:
    """Call `fn` until it succeeds, retrying transient failures.

    PermanentError is re-raised at once. TransientError is always retried;
    other exceptions are retried only when `is_transient` says so. When the
    attempts run out, RetryExhaustedError wraps the last failure.
    """
    delays = policy.delays(rng)
    last_error: Exception | None = None
    for attempt in range(policy.steps):
        try:
            return fn()
        except PermanentError:
            raise
        except TransientError as exc:
            last_error = exc
        except Exception as exc:
            if is_transient is None or not is_transient(exc):
                raise
            last_error = exc

        logger.warning(
            "transient error on %s (attempt %d/%d): %s",
            resource_kind,
            attempt + 1,
            policy.steps,
            last_error,
        )
        if attempt < len(delays):
            sleep(delays[attempt])

    raise RetryExhaustedError(resource_kind, policy.steps, last_error)
