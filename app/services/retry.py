"""Bounded retry with exponential backoff for external calls."""

import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple, Type, TypeVar

from app.logging_config import get_logger
from app.services.errors import RetryableError

logger = get_logger("retry")

T = TypeVar("T")

JITTER_RATIO = 0.2


def exponential_backoff_with_jitter(base_ms: int, rng: Callable[[], float] = random.random) -> Callable[[int], int]:
    """Backoff for retry number ``attempt`` (1-based): base * 2^(attempt-1), +/-20%."""

    def backoff(attempt: int) -> int:
        delay = base_ms * 2 ** max(attempt - 1, 0)
        jitter = delay * JITTER_RATIO * (rng() * 2 - 1)
        return max(int(delay + jitter), 0)

    return backoff


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    backoff_fn: Callable[[int], int] = field(default_factory=lambda: exponential_backoff_with_jitter(250))
    retry_on: Tuple[Type[BaseException], ...] = (RetryableError,)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    """Call ``fn`` until it succeeds, raises a non-retryable error, or attempts run out.

    The last retryable exception is re-raised when attempts are exhausted.
    """
    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except policy.retry_on as exc:
            if attempt >= attempts:
                raise
            delay_ms = policy.backoff_fn(attempt)
            logger.info(f"Retrying after {type(exc).__name__} (attempt {attempt}/{attempts}, backoff {delay_ms}ms)")
            if on_retry is not None:
                on_retry(attempt, exc)
            sleep(delay_ms / 1000)
    raise RuntimeError("unreachable")
