"""
Retry Strategies

Backoff schedule used by the processing queue, and a generic retry helper
for idempotent reads against the chain provider.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .errors import RecoverableError, UnrecoverableError, is_retryable

T = TypeVar("T")


def backoff_delay(base_delay_seconds: float, retry_count: int, multiplier: float = 2.0) -> float:
    """``base * multiplier ** (retry_count - 1)``; zero before the first retry."""
    if retry_count < 1:
        return 0.0
    return base_delay_seconds * multiplier ** (retry_count - 1)


@dataclass
class RetryConfig:
    """How often and how patiently to repeat a read."""

    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    multiplier: float = 2.0
    jitter_ratio: float = 0.0   # 0.1 spreads each delay by +/-10%

    def get_delay(self, attempt: int) -> float:
        """Sleep after the ``attempt``-th failed try (1-based)."""
        delay = min(
            backoff_delay(self.initial_delay_seconds, max(attempt, 1), self.multiplier),
            self.max_delay_seconds,
        )
        if self.jitter_ratio:
            delay *= 1 + random.uniform(-self.jitter_ratio, self.jitter_ratio)
        return max(delay, 0.0)


class RetryStrategy:
    """
    Repeats an async operation while its failures classify as retryable.

    Only for operations that are safe to repeat. Confirmation waits are
    retried by the processing queue instead, one entry at a time.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or RetryConfig()
        self.logger = logger or logging.getLogger(__name__)
        self._sleep = sleep

    def should_retry(self, error: Exception, attempt: int) -> bool:
        if attempt >= self.config.max_attempts or isinstance(error, UnrecoverableError):
            return False
        return isinstance(error, RecoverableError) or is_retryable(error)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
    ) -> T:
        attempt = 1
        while True:
            try:
                result = await operation()
                break
            except Exception as e:
                if not self.should_retry(e, attempt):
                    if attempt > 1:
                        self.logger.error(f"{operation_name} gave up after {attempt} attempts: {e}")
                    raise
                delay = self.config.get_delay(attempt)
                self.logger.warning(
                    f"{operation_name} failed ({e}), attempt {attempt}/{self.config.max_attempts}; "
                    f"retrying in {delay:.2f}s"
                )
            await self._sleep(delay)
            attempt += 1

        if attempt > 1:
            self.logger.info(f"{operation_name} succeeded on attempt {attempt}")
        return result
