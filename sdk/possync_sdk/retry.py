"""
Retry policy for PosSync SDK.

Wraps one logical request with breaker admission, exponential backoff and
failure accounting. Only transient failures are retried; application errors
(4xx) prove the server is up and are handed straight back to the caller.

Invariants:
    - The breaker is consulted before every attempt
    - A suppressed request raises CircuitOpenError and touches no counters
    - Each failed transient attempt calls record_failure() exactly once
    - A successful attempt calls record_success() exactly once
    - ApiError is never retried and never counted as a breaker failure
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .circuit import CircuitBreaker
from .errors import ApiError, CircuitOpenError, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Backoff-and-retry wrapper bound to a circuit breaker.

    Attributes:
        breaker: Shared circuit breaker
        max_retries: Retries after the first attempt
        initial_backoff_ms: Delay before the first retry
        max_backoff_ms: Upper bound of the exponential delay
        jitter_ms: Upper bound of the random jitter added to each delay

    Example:
        >>> policy = RetryPolicy(breaker)
        >>> entity = await policy.call(lambda: transport.get_product("p1"))
    """

    def __init__(
        self,
        breaker: CircuitBreaker,
        max_retries: int = 3,
        initial_backoff_ms: int = 1000,
        max_backoff_ms: int = 10_000,
        jitter_ms: int = 500,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.breaker = breaker
        self.max_retries = max_retries
        self.initial_backoff_ms = initial_backoff_ms
        self.max_backoff_ms = max_backoff_ms
        self.jitter_ms = jitter_ms
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

    def backoff_ms(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based), jitter included."""
        base = min(self.initial_backoff_ms * (2 ** attempt), self.max_backoff_ms)
        jitter = self._rng.uniform(0, self.jitter_ms) if self.jitter_ms > 0 else 0
        return base + jitter

    async def call(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        max_retries: Optional[int] = None,
    ) -> T:
        """Run `fn` under the policy.

        Args:
            fn: Zero-argument coroutine factory; called once per attempt
            max_retries: Override of the configured retry count

        Returns:
            Whatever `fn` returns

        Raises:
            CircuitOpenError: If the breaker refuses the first attempt
            TransientError: If every attempt failed transiently, or the
                breaker opened between attempts
            ApiError: If the server rejected the request (4xx)
            ValueError: If max_retries is negative
        """
        retries = self.max_retries if max_retries is None else max_retries
        last_error: Optional[TransientError] = None

        for attempt in range(retries + 1):
            if not self.breaker.allow_request():
                if last_error is not None:
                    logger.info(
                        "Circuit opened during retries, giving up",
                        extra={"attempt": attempt},
                    )
                    raise last_error
                raise CircuitOpenError()

            try:
                result = await fn()
            except ApiError:
                self.breaker.record_success()
                raise
            except TransientError as e:
                self.breaker.record_failure()
                last_error = e
                if attempt >= retries:
                    break
                delay_ms = self.backoff_ms(attempt)
                logger.debug(
                    f"Transient failure, retrying in {delay_ms:.0f}ms: {e}",
                    extra={"attempt": attempt + 1, "max_retries": retries},
                )
                await self._sleep(delay_ms / 1000)
                continue

            self.breaker.record_success()
            return result

        if last_error is None:
            raise ValueError(f"max_retries must be >= 0, got {retries}")
        logger.warning(
            f"Request failed after {retries + 1} attempts: {last_error}",
            extra={"status": last_error.status},
        )
        raise last_error
