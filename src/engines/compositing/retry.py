"""
Retry with exponential backoff for the remote compositing call.

Only errors classified as retryable at the client boundary are retried:
network failures, timeouts, rate limits and server faults. Everything else
propagates on the first attempt.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

from src.core.logging import get_logger
from src.core.metrics import record_retry

logger = get_logger(__name__)


def is_retryable(error: BaseException) -> bool:
    """Read the classification decided where the error was raised."""
    return bool(getattr(error, "retryable", False))


class RetryExecutor:
    """
    Runs an async callable up to max_attempts times.

    The delay before attempt n+1 is base_delay * 2**n (n counted from 1),
    so a 2 second base waits 4s, 8s, 16s. Each execute() call starts with a
    fresh attempt counter.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep or asyncio.sleep

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)

    async def execute(self, fn: Callable[[], Awaitable[Any]], context: str = "") -> Any:
        """
        Await fn() until it succeeds, fails fatally, or attempts run out.

        The last error is re-raised unchanged.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await fn()
            except Exception as error:
                if not is_retryable(error) or attempt == self.max_attempts:
                    raise

                delay = self.delay_for(attempt)
                logger.warning(
                    "remote_call_retrying",
                    context=context,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay_seconds=delay,
                    error=str(error)
                )
                record_retry(attempt)
                await self._sleep(delay)
