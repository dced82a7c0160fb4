"""
Flowgate Retry Handler

Wraps a step invocation with its retry policy.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from flowgate.core.config import RetryConfig
from flowgate.errors import FlowgateError, classify
from flowgate.types import ErrorHandling, RetryPolicy

logger = structlog.get_logger(__name__)


AttemptFunc = Callable[[int], Awaitable[Dict[str, Any]]]
FailureCallback = Callable[[int, FlowgateError], None]


@dataclass
class RetryOutcome:
    """Result of running a step under its retry policy."""
    succeeded: bool
    attempts: int
    result: Optional[Dict[str, Any]] = None
    error: Optional[FlowgateError] = None

    @property
    def exhausted(self) -> bool:
        """Failed with a retryable error and no attempts left."""
        return not self.succeeded and self.error is not None and self.error.retryable


class RetryHandler:
    """
    Retry & error handler for step invocations.

    Features:
    - ``attempts`` counts total tries; absent or zero means one try
    - Exponential backoff ``delay * multiplier^(n-1)`` with a configurable
      default multiplier
    - Computed delays clamped to the configured floor and cap
    - Non-retryable errors end the loop immediately

    Backoff waits go through ``sleep`` so cancelling the owning task
    interrupts them.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or RetryConfig()
        self._sleep = sleep

    def compute_delay(self, policy: Optional[RetryPolicy], attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        if policy is None:
            return self.config.min_delay_seconds

        multiplier = policy.backoff_multiplier or self.config.default_backoff_multiplier
        delay = policy.delay_seconds * (multiplier ** (attempt - 1))

        cap = self.config.max_delay_seconds
        if policy.max_delay_seconds is not None:
            cap = min(cap, policy.max_delay_seconds)

        return max(self.config.min_delay_seconds, min(delay, cap))

    async def run(
        self,
        step_id: str,
        error_handling: ErrorHandling,
        attempt: AttemptFunc,
        on_failure: Optional[FailureCallback] = None,
    ) -> RetryOutcome:
        """
        Invoke ``attempt`` until it succeeds or the policy gives up.

        ``on_failure`` is called for every failed attempt before any backoff.
        Cancellation propagates untouched.
        """
        max_attempts = error_handling.max_attempts
        error: Optional[FlowgateError] = None

        for number in range(1, max_attempts + 1):
            try:
                result = await attempt(number)
                return RetryOutcome(succeeded=True, attempts=number, result=result)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = classify(e)

            if on_failure:
                on_failure(number, error)

            if not error.retryable:
                logger.info(
                    "retry_skipped",
                    step_id=step_id,
                    attempt=number,
                    error_kind=error.kind.value,
                )
                return RetryOutcome(succeeded=False, attempts=number, error=error)

            if number >= max_attempts:
                break

            delay = self.compute_delay(error_handling.retry, number)
            logger.info(
                "retry_scheduled",
                step_id=step_id,
                attempt=number,
                next_attempt=number + 1,
                max_attempts=max_attempts,
                delay_seconds=delay,
                error_kind=error.kind.value,
            )
            if delay > 0:
                await self._sleep(delay)

        return RetryOutcome(succeeded=False, attempts=max_attempts, error=error)
