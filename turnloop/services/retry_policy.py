"""Retry Policy — async retry loop with classified failures and exponential backoff.

Invariants:
    - Only retryable codes (core/domain_types.RETRYABLE_CODES) are retried
    - The error raised after the last attempt is the classified ModelServiceError,
      chained to the original exception
    - asyncio.CancelledError is never retried (BaseException, passes through)
    - No more than max_attempts calls to the operation

Design Decisions:
    - Sleep and randomness injected: tests run instantly and deterministically
    - Delay math lives in core/error_classifier.py (pure); this module only loops and sleeps
"""

import asyncio
import dataclasses
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from turnloop.core.error_classifier import BackoffPolicy, classify, compute_delay
from turnloop.core.errors import ErrorContext

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Runs an async operation, retrying transient failures with backoff."""

    def __init__(
        self,
        policy: BackoffPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        self.policy = policy or BackoffPolicy()
        self._sleep = sleep
        self._rand = rand

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: int | None = None,
        operation_name: str = "model_call",
        context: ErrorContext | None = None,
    ) -> T:
        """Await operation() until it succeeds or the failure is final."""
        attempts = max(1, max_attempts or self.policy.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except Exception as e:
                ctx = dataclasses.replace(context or ErrorContext(), attempt=attempt)
                classified = classify(e, ctx)
                extra = {
                    "attempt": attempt,
                    "error_code": classified.error_code.value,
                    "conversation_id": ctx.conversation_id,
                    "iteration": ctx.iteration,
                }
                if attempt >= attempts or not classified.retryable:
                    logger.error(
                        "%s failed after %d attempt(s): %s",
                        operation_name, attempt, classified.message, extra=extra,
                    )
                    if classified is e:
                        raise
                    raise classified from e
                delay_ms = compute_delay(
                    attempt, classified, self.policy, self._rand,
                )
                logger.warning(
                    "%s failed (%s), retry in %dms (attempt %d/%d)",
                    operation_name, classified.error_code.value,
                    delay_ms, attempt, attempts, extra=extra,
                )
                await self._sleep(delay_ms / 1000)
        raise AssertionError("unreachable")  # pragma: no cover
