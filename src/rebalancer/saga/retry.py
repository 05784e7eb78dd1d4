"""Uniform retry policy for state-changing chain calls.

Withdraw, approve and deposit go through the same policy: a fixed number
of attempts with a fixed delay, retrying on any exception. Read-only
calls and the swap itself are never wrapped.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import AsyncRetrying, RetryCallState, RetryError, stop_after_attempt, wait_fixed

from rebalancer.config import SagaSettings
from rebalancer.exceptions import StepFailedError
from rebalancer.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Fixed-delay retry with a bounded number of attempts.

    Args:
        max_attempts: Total attempts including the first one.
        delay_seconds: Wait between attempts.
        sleep: Async sleep used between attempts (tests pass a no-op).
    """

    def __init__(
        self,
        max_attempts: int = 3,
        delay_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.delay_seconds = delay_seconds
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: SagaSettings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "RetryPolicy":
        return cls(settings.max_attempts, settings.retry_delay_seconds, sleep)

    async def run(self, step: str, func: Callable[[], Awaitable[T]]) -> T:
        """Await ``func()`` until it succeeds or attempts run out.

        Raises:
            StepFailedError: After the final failed attempt, carrying the
                last underlying error.
        """

        def _log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "retrying_step",
                step=step,
                attempt=retry_state.attempt_number,
                max_attempts=self.max_attempts,
                error=str(error),
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.delay_seconds),
            sleep=self._sleep,
            before_sleep=_log_retry,
        )
        try:
            return await retrying(func)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            logger.error(
                "step_failed",
                step=step,
                attempts=self.max_attempts,
                error=str(last_error),
            )
            raise StepFailedError(step, self.max_attempts, last_error) from last_error
