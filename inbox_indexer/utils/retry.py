"""
Retry Policy Module
Exponential backoff for single idempotent store operations
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class RetryPolicy:
    """
    Retries one idempotent async operation with exponential backoff.

    PATTERN RECOGNITION: This is the write-path counterpart of the connection
    supervisor's reconnect backoff. The two are independent: this one retries
    a single store call a few times within seconds, the supervisor repairs a
    whole session over minutes.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
    ):
        """
        Args:
            max_attempts: Total attempts including the first call
            base_delay: Delay before the first retry (seconds)
            max_delay: Upper bound on any single delay (seconds)
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)"""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "operation",
    ) -> T:
        """
        Run operation, retrying on any exception.

        Raises:
            The last exception once max_attempts calls have failed.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except Exception as exc:
                if attempt >= self.max_attempts:
                    logger.error(
                        f"{description} failed after {attempt} attempt(s): {exc}"
                    )
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.max_attempts}): "
                    f"{exc}; retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

        raise RuntimeError("unreachable")  # pragma: no cover
