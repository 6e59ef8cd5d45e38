"""Retry with capped exponential backoff."""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .exceptions import (
    AuthenticationCancelled,
    ConfigurationCreationFailed,
    NotInstalled,
    PermissionDenied,
)
from ..logging_utility import logger

T = TypeVar("T")

# Retrying these can never succeed, or would re-prompt a user who said no
NON_RETRYABLE = (
    AuthenticationCancelled,
    PermissionDenied,
    NotInstalled,
    ConfigurationCreationFailed,
)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int
    base_delay: float
    max_delay: float

    def delay_for(self, attempt: int) -> float:
        """Backoff before the retry that follows ``attempt`` (0-based)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    async def execute(
            self,
            operation: Callable[[], Awaitable[T]],
            on_retry: Optional[Callable[[int, Exception], None]] = None,
    ) -> T:
        """
        Run ``operation`` up to ``max_retries + 1`` times.

        Cancellation is never retried: ``asyncio.CancelledError`` propagates
        from the checkpoint before each attempt, from the attempt itself, or
        from the backoff sleep.

        Raises:
            The last error if every attempt fails
        """
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            # Delivers a pending cancellation before any side effect
            await asyncio.sleep(0)

            try:
                return await operation()
            except asyncio.CancelledError:
                logger.info("Operation cancelled")
                raise
            except NON_RETRYABLE:
                raise
            except Exception as e:
                last_error = e

                if attempt >= self.max_retries:
                    logger.warning(f"All {self.max_retries} retry attempts exhausted")
                    break

                delay = self.delay_for(attempt)
                logger.info(f"Attempt {attempt + 1}/{self.max_retries + 1} failed: {e}")
                logger.info(f"Retrying in {delay:.1f}s...")
                if on_retry is not None:
                    on_retry(attempt + 1, e)
                await asyncio.sleep(delay)

        raise last_error

    @classmethod
    def named(cls, name: str) -> 'RetryPolicy':
        try:
            return PRESETS[name]
        except KeyError:
            raise ValueError(f"Unknown retry preset '{name}'. Valid presets are: {', '.join(PRESETS)}")


RetryPolicy.CONSERVATIVE = RetryPolicy(max_retries=2, base_delay=0.5, max_delay=5.0)
RetryPolicy.DEFAULT = RetryPolicy(max_retries=3, base_delay=1.0, max_delay=10.0)
RetryPolicy.AGGRESSIVE = RetryPolicy(max_retries=5, base_delay=1.0, max_delay=15.0)

PRESETS = {
    "conservative": RetryPolicy.CONSERVATIVE,
    "default": RetryPolicy.DEFAULT,
    "aggressive": RetryPolicy.AGGRESSIVE,
}
