"""Exponential backoff for best-effort backend calls (cookie relay, health)."""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

__all__ = ["RetryConfig", "RetryExhausted", "calculate_delay", "retry_with_backoff"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 2
    base_delay: float = 0.5  # seconds
    max_delay: float = 10.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = True


class RetryExhausted(Exception):
    """All retry attempts exhausted."""

    def __init__(self, attempts: int, last_error: Optional[Exception] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Retry exhausted after {attempts} attempts")


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Delay before retry number ``attempt`` (0-indexed), capped and jittered +/-25%."""
    delay = min(config.base_delay * (config.exponential_base ** attempt), config.max_delay)
    if config.jitter:
        spread = delay * 0.25
        delay += random.uniform(-spread, spread)
    return max(0.0, delay)


def retry_with_backoff(
    func: Callable[[], T],
    config: Optional[RetryConfig] = None,
    retryable_exceptions: tuple = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` until it succeeds or the retry budget runs out.

    Only ``retryable_exceptions`` are retried; anything else propagates
    immediately.

    Raises:
        RetryExhausted: If every attempt failed with a retryable error
    """
    config = config or RetryConfig()
    last_error: Optional[Exception] = None

    for attempt in range(config.max_retries + 1):
        try:
            return func()
        except retryable_exceptions as e:
            last_error = e
            if attempt >= config.max_retries:
                break
            delay = calculate_delay(attempt, config)
            logger.warning(f"Attempt {attempt + 1} failed: {e}. Retrying in {delay:.1f}s...")
            sleep(delay)

    raise RetryExhausted(config.max_retries + 1, last_error)
