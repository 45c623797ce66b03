"""
Unit tests for the circuit breaker.

Tests cover:
- Opening after the failure threshold
- Lazy half-open transition after the cooldown
- Single probe admission in half-open
- Reset and listener notification
"""

import pytest

from sdk.possync_sdk.circuit import CircuitBreaker, CircuitState


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestCircuitBreaker:
    """Tests for CircuitBreaker."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker(failure_threshold=5, cooldown_ms=30_000, clock=clock)

    def test_starts_closed(self, breaker):
        """New breaker admits requests."""
        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow_request() is True
        assert breaker.consecutive_failures == 0
        assert breaker.is_degraded is False

    def test_opens_at_threshold(self, breaker):
        """Five consecutive failures open the circuit."""
        for _ in range(4):
            breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert breaker.allow_request() is False
        assert breaker.is_degraded is True

    def test_success_resets_failures(self, breaker):
        """A success between failures restarts the count."""
        for _ in range(4):
            breaker.record_failure()
        breaker.record_success()
        for _ in range(4):
            breaker.record_failure()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 4

    def test_half_open_after_cooldown(self, breaker, clock):
        """Open moves to half-open once the cooldown elapsed, on read."""
        for _ in range(5):
            breaker.record_failure()

        clock.advance(29.9)
        assert breaker.state == CircuitState.OPEN
        assert breaker.allow_request() is False

        clock.advance(0.2)
        assert breaker.state == CircuitState.HALF_OPEN

    def test_half_open_admits_single_probe(self, breaker, clock):
        """Only one request is admitted while the probe is in flight."""
        for _ in range(5):
            breaker.record_failure()
        clock.advance(30)

        assert breaker.allow_request() is True
        assert breaker.allow_request() is False
        assert breaker.allow_request() is False

    def test_probe_success_closes(self, breaker, clock):
        """Successful probe closes the circuit and clears failures."""
        for _ in range(5):
            breaker.record_failure()
        clock.advance(30)
        assert breaker.allow_request() is True

        breaker.record_success()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0
        assert breaker.allow_request() is True

    def test_probe_failure_reopens_immediately(self, breaker, clock):
        """A single failed probe reopens without re-reaching the threshold."""
        for _ in range(5):
            breaker.record_failure()
        clock.advance(30)
        assert breaker.allow_request() is True

        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        assert breaker.allow_request() is False

        # A new full cooldown is required
        clock.advance(29)
        assert breaker.state == CircuitState.OPEN
        clock.advance(1)
        assert breaker.state == CircuitState.HALF_OPEN

    def test_reset_forces_closed(self, breaker):
        """Manual reset closes and zeroes counters."""
        for _ in range(5):
            breaker.record_failure()

        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0
        assert breaker.last_failure_at is None
        assert breaker.allow_request() is True

    def test_listeners_receive_transitions(self, breaker, clock):
        """Subscribers see every state change."""
        seen = []
        unsubscribe = breaker.subscribe(lambda old, new: seen.append((old, new)))

        for _ in range(5):
            breaker.record_failure()
        clock.advance(30)
        breaker.allow_request()
        breaker.record_success()

        assert seen == [
            (CircuitState.CLOSED, CircuitState.OPEN),
            (CircuitState.OPEN, CircuitState.HALF_OPEN),
            (CircuitState.HALF_OPEN, CircuitState.CLOSED),
        ]

        unsubscribe()
        breaker.reset()
        for _ in range(5):
            breaker.record_failure()
        assert len(seen) == 3

    def test_failing_listener_does_not_break_breaker(self, breaker):
        """Listener exceptions are logged, not raised."""

        def bad_listener(old, new):
            raise RuntimeError("boom")

        breaker.subscribe(bad_listener)
        for _ in range(5):
            breaker.record_failure()

        assert breaker.state == CircuitState.OPEN

    def test_invalid_threshold(self):
        """Threshold must be positive."""
        with pytest.raises(ValueError):
            CircuitBreaker(failure_threshold=0)

    def test_stats(self, breaker):
        """Stats expose state and counters."""
        breaker.record_failure()
        stats = breaker.stats()
        assert stats["state"] == "closed"
        assert stats["consecutive_failures"] == 1
        assert stats["failure_threshold"] == 5
