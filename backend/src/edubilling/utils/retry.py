"""Retry policy shared by all Stripe calls."""
import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

import structlog

from edubilling.errors import ProcessorTransientError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def linear_backoff(unit_seconds: float) -> Callable[[int], float]:
    """Delay of ``attempt * unit_seconds`` after the given failed attempt."""

    def delay(attempt: int) -> float:
        return attempt * unit_seconds

    return delay


def is_transient(exc: BaseException) -> bool:
    """Only connection errors, timeouts and 5xx responses are retried."""
    return isinstance(exc, ProcessorTransientError)


@dataclass
class RetryPolicy:
    """
    Bounded retry with backoff.

    Attributes:
        max_attempts: Total attempts including the first one
        backoff: Maps the number of the failed attempt (1-based) to a delay in seconds
        retryable: Decides whether an exception may be retried
        sleep: Awaitable sleep, replaceable in tests
    """

    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default_factory=lambda: linear_backoff(1.0))
    retryable: Callable[[BaseException], bool] = is_transient
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    async def run(self, operation: Callable[[], Awaitable[T]], name: str = "operation") -> T:
        """
        Run an async operation under this policy.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt
            name: Operation name for logs

        Returns:
            Result of the first successful attempt

        Raises:
            The last exception when attempts are exhausted or the error is not retryable
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as exc:
                if attempt >= self.max_attempts or not self.retryable(exc):
                    raise
                delay = self.backoff(attempt)
                logger.warning(
                    "retrying_operation",
                    operation=name,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay_seconds=delay,
                    error=str(exc),
                )
                await self.sleep(delay)
                attempt += 1
