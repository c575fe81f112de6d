"""
Reconnect Retry Policy
Bounded retry loop with a delay before every attempt, independent of the
connection implementation it drives.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from .exceptions import SyncConnectionError

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass
class ReconnectPolicy:
    """
    How many times to retry a connection operation and how long to wait

    With the default multiplier of 1.0 every attempt waits the same fixed
    delay; a multiplier above 1.0 turns it into exponential backoff capped
    at ``max_delay``.

    Attributes:
        max_attempts: Attempts before giving up (>= 1)
        delay_seconds: Wait before the first attempt
        backoff_multiplier: Growth factor applied per attempt
        max_delay: Upper bound on any single wait
    """
    max_attempts: int = 3
    delay_seconds: float = 5.0
    backoff_multiplier: float = 1.0
    max_delay: float = 300.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds cannot be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay preceding ``attempt`` (1-indexed)"""
        delay = self.delay_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "operation",
        retry_on: Tuple[Type[BaseException], ...] = (SyncConnectionError,),
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> T:
        """
        Run ``operation`` until it succeeds or attempts are exhausted

        Errors that carry ``retryable=False`` are re-raised immediately.

        Raises:
            SyncConnectionError: After ``max_attempts`` failures, chained to
                the last underlying error
        """
        sleep = sleep or asyncio.sleep
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            await sleep(self.delay_for(attempt))
            try:
                return await operation()
            except retry_on as exc:
                if not getattr(exc, "retryable", True):
                    raise
                last_error = exc
                logger.warning(
                    f"{description} attempt {attempt}/{self.max_attempts} failed: {exc}"
                )

        raise SyncConnectionError(
            f"{description} failed after {self.max_attempts} attempts: {last_error}",
            retryable=False,
        ) from last_error
