"""
Exponential-backoff retry for transient store / bus / queue failures.

The loop follows the same shape as a gateway retry: attempt, classify the error,
bail out on anything permanent, otherwise sleep min(max_delay, base_delay * 2^(n-1))
and try again. The last error is re-raised once attempts are exhausted.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from shared.errors import is_transient

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.05
    max_delay: float = 1.0
    retryable: Callable[[BaseException], bool] = field(default=is_transient)
    jitter: bool = False

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Backoff to wait after the given (1-based) failed attempt."""
        delay = min(self.max_delay, self.base_delay * 2 ** (attempt - 1))
        if self.jitter:
            delay = random.uniform(0, delay)
        return delay


async def retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Callable[[int, BaseException], None] | None = None,
) -> T:
    """
    Run ``operation`` until it succeeds, fails permanently, or runs out of attempts.

    Only ``Exception`` subclasses are inspected; cancellation propagates untouched.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as exc:
            if not policy.retryable(exc):
                raise
            if attempt >= policy.max_attempts:
                logger.warning(
                    "%s failed after %d attempt(s)",
                    description,
                    attempt,
                    extra={"attempt": attempt, "error": str(exc)},
                )
                raise

            delay = policy.delay_for(attempt)
            logger.info(
                "Retrying %s in %.3fs",
                description,
                delay,
                extra={"attempt": attempt, "backoff_s": delay, "error": str(exc)},
            )
            if on_retry is not None:
                on_retry(attempt, exc)
            await sleep(delay)
            attempt += 1
