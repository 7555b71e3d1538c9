"""
Retry helpers.

Used for store writes that are safe to repeat (recording an execution result
is idempotent) and for computing the backoff gate of a retried order.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Optional, Tuple, Type, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    jitter_factor: float = 0.1

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt number (0-based)."""
        delay = min(
            self.initial_delay_seconds * (self.exponential_base ** attempt),
            self.max_delay_seconds,
        )
        if self.jitter:
            jitter_range = delay * self.jitter_factor
            delay += random.uniform(-jitter_range, jitter_range)
        return max(delay, 0)


async def retry_async(
    operation: Callable[[], Coroutine[Any, Any, T]],
    config: Optional[RetryConfig] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    description: str = "operation",
) -> T:
    """
    Run ``operation`` until it succeeds or attempts are exhausted.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates immediately. The last error is re-raised when every attempt
    fails.
    """
    config = config or RetryConfig()
    attempts = max(config.max_attempts, 1)

    for attempt in range(attempts):
        try:
            return await operation()
        except retry_on as e:
            if attempt >= attempts - 1:
                raise
            delay = config.get_delay(attempt)
            logger.warning(
                f"{description} attempt {attempt + 1}/{attempts} failed: {e}. "
                f"Retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)

    raise RuntimeError("All retry attempts exhausted")
