"""
Circuit breaker for PosSync SDK.

The breaker tracks consecutive transient failures against the backend and,
once a threshold is reached, suppresses requests for a cooldown period so a
failing server is not hammered. After the cooldown a single probe request is
admitted; its outcome decides whether the circuit closes or reopens.

States:
    CLOSED -> OPEN       consecutive_failures reaches failure_threshold
    OPEN -> HALF_OPEN    cooldown elapsed (evaluated lazily on read, no timer)
    HALF_OPEN -> CLOSED  probe succeeded
    HALF_OPEN -> OPEN    probe failed (a single failure reopens)
    any -> CLOSED        reset()

Invariants:
    - consecutive_failures >= 0
    - OPEN implies consecutive_failures >= failure_threshold
    - record_success() always zeroes consecutive_failures
    - At most one probe is in flight while HALF_OPEN
    - Client-side suppressions are never counted as failures

How to change safely:
    - Keep state evaluation lazy; callers rely on reading `state` being enough
    - Listeners are called synchronously; they must not call back into the breaker
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

StateListener = Callable[["CircuitState", "CircuitState"], None]


class CircuitState(Enum):
    """Circuit breaker state."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Process-wide circuit breaker.

    Construct one instance and inject it into every component that talks
    to the backend; the InventoryClient owns it.

    Attributes:
        failure_threshold: Consecutive failures that open the circuit
        cooldown_ms: Time the circuit stays open before admitting a probe

    Example:
        >>> breaker = CircuitBreaker(failure_threshold=5, cooldown_ms=30_000)
        >>> if breaker.allow_request():
        ...     try:
        ...         await send()
        ...         breaker.record_success()
        ...     except TransientError:
        ...         breaker.record_failure()
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_ms: int = 30_000,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        """Initialize the breaker.

        Args:
            failure_threshold: Consecutive failures before opening
            cooldown_ms: Open duration before a probe is admitted
            clock: Monotonic clock in seconds (injectable for tests)
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if cooldown_ms < 0:
            raise ValueError("cooldown_ms must be >= 0")

        self.failure_threshold = failure_threshold
        self.cooldown_ms = cooldown_ms
        self._clock = clock or time.monotonic

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._last_failure_at: Optional[float] = None
        self._probe_in_flight = False
        self._listeners: List[StateListener] = []

    @property
    def state(self) -> CircuitState:
        """Current state, moving OPEN to HALF_OPEN once the cooldown elapsed."""
        if self._state == CircuitState.OPEN and self._cooldown_elapsed():
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def last_failure_at(self) -> Optional[float]:
        return self._last_failure_at

    @property
    def is_degraded(self) -> bool:
        """True while requests are being suppressed or probed."""
        return self.state != CircuitState.CLOSED

    def allow_request(self) -> bool:
        """Check whether a request may be sent now.

        In HALF_OPEN the first caller is admitted as the probe; others are
        refused until the probe reports back.
        """
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.OPEN:
            return False
        if self._probe_in_flight:
            return False
        self._probe_in_flight = True
        logger.debug("Circuit half-open, admitting probe request")
        return True

    def record_success(self) -> None:
        """Record a request that reached the server."""
        self._consecutive_failures = 0
        self._probe_in_flight = False
        if self._state != CircuitState.CLOSED:
            logger.info("Circuit closed after successful request")
            self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        """Record a transient failure (network, timeout, 5xx)."""
        self._consecutive_failures += 1
        self._last_failure_at = self._clock()
        was_probe = self._probe_in_flight
        self._probe_in_flight = False

        if self._state == CircuitState.HALF_OPEN or was_probe:
            logger.warning(
                "Circuit probe failed, reopening",
                extra={"consecutive_failures": self._consecutive_failures},
            )
            self._transition(CircuitState.OPEN)
        elif (
            self._state == CircuitState.CLOSED
            and self._consecutive_failures >= self.failure_threshold
        ):
            logger.warning(
                "Circuit opened",
                extra={
                    "consecutive_failures": self._consecutive_failures,
                    "cooldown_ms": self.cooldown_ms,
                },
            )
            self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        """Force the circuit closed and clear counters (manual retry)."""
        self._consecutive_failures = 0
        self._last_failure_at = None
        self._probe_in_flight = False
        if self._state != CircuitState.CLOSED:
            logger.info("Circuit manually reset")
            self._transition(CircuitState.CLOSED)

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener called with (old_state, new_state).

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def stats(self) -> dict:
        """Snapshot for logging and diagnostics."""
        return {
            "state": self.state.value,
            "consecutive_failures": self._consecutive_failures,
            "failure_threshold": self.failure_threshold,
            "cooldown_ms": self.cooldown_ms,
        }

    def _cooldown_elapsed(self) -> bool:
        if self._last_failure_at is None:
            return True
        elapsed_ms = (self._clock() - self._last_failure_at) * 1000
        return elapsed_ms >= self.cooldown_ms

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        for listener in list(self._listeners):
            try:
                listener(old_state, new_state)
            except Exception as e:
                logger.error(f"Circuit listener failed: {e}", exc_info=True)
