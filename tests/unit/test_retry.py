"""
Unit tests for the retry policy.

Tests cover:
- Retrying transient failures with capped exponential backoff
- Breaker accounting per attempt
- No retries for application errors
- Circuit-open suppression
"""

import random
from unittest.mock import AsyncMock

import pytest

from sdk.possync_sdk.circuit import CircuitBreaker, CircuitState
from sdk.possync_sdk.errors import (
    CircuitOpenError,
    ConflictError,
    TransientError,
    ValidationError,
)
from sdk.possync_sdk.retry import RetryPolicy


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    @pytest.fixture
    def breaker(self):
        return CircuitBreaker(failure_threshold=5, cooldown_ms=30_000)

    @pytest.fixture
    def sleeps(self):
        return []

    @pytest.fixture
    def policy(self, breaker, sleeps):
        async def fake_sleep(seconds):
            sleeps.append(seconds)

        return RetryPolicy(breaker, max_retries=3, jitter_ms=0, sleep=fake_sleep)

    @pytest.mark.asyncio
    async def test_success_first_try(self, policy, breaker, sleeps):
        """Successful call returns its value without sleeping."""
        fn = AsyncMock(return_value={"ok": True})

        result = await policy.call(fn)

        assert result == {"ok": True}
        assert fn.await_count == 1
        assert sleeps == []
        assert breaker.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self, policy, breaker, sleeps):
        """Transient failures are retried with doubling delays."""
        fn = AsyncMock(
            side_effect=[TransientError("down"), TransientError("down"), {"ok": True}]
        )

        result = await policy.call(fn)

        assert result == {"ok": True}
        assert fn.await_count == 3
        assert sleeps == [1.0, 2.0]
        assert breaker.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, policy, breaker, sleeps):
        """Last transient error is raised after max_retries + 1 attempts."""
        fn = AsyncMock(side_effect=TransientError("down", status=503))

        with pytest.raises(TransientError) as exc_info:
            await policy.call(fn)

        assert exc_info.value.status == 503
        assert fn.await_count == 4
        assert sleeps == [1.0, 2.0, 4.0]
        assert breaker.consecutive_failures == 4

    @pytest.mark.asyncio
    async def test_application_error_not_retried(self, policy, breaker):
        """4xx errors propagate immediately and count as success."""
        breaker.record_failure()
        fn = AsyncMock(side_effect=ConflictError("stale", body={"current": {"id": "p1", "version": 2}}))

        with pytest.raises(ConflictError):
            await policy.call(fn)

        assert fn.await_count == 1
        assert breaker.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_validation_error_not_counted(self, policy, breaker):
        """Validation errors never open the circuit."""
        fn = AsyncMock(side_effect=ValidationError("bad", status=400))

        for _ in range(10):
            with pytest.raises(ValidationError):
                await policy.call(fn)

        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_circuit_open_suppresses_without_counting(self, policy, breaker):
        """An open circuit raises CircuitOpenError and sends nothing."""
        for _ in range(5):
            breaker.record_failure()
        fn = AsyncMock()

        with pytest.raises(CircuitOpenError):
            await policy.call(fn)

        fn.assert_not_awaited()
        assert breaker.consecutive_failures == 5

    @pytest.mark.asyncio
    async def test_stops_when_circuit_opens_mid_retry(self, sleeps):
        """Retrying stops with the last transient error once the breaker opens."""
        breaker = CircuitBreaker(failure_threshold=2, cooldown_ms=30_000)

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        policy = RetryPolicy(breaker, max_retries=5, jitter_ms=0, sleep=fake_sleep)
        fn = AsyncMock(side_effect=TransientError("down"))

        with pytest.raises(TransientError) as exc_info:
            await policy.call(fn)

        assert not isinstance(exc_info.value, CircuitOpenError)
        assert fn.await_count == 2
        assert breaker.state == CircuitState.OPEN

    def test_backoff_is_capped(self, breaker):
        """Delays double and stop at max_backoff_ms."""
        policy = RetryPolicy(breaker, initial_backoff_ms=1000, max_backoff_ms=10_000, jitter_ms=0)

        assert [policy.backoff_ms(n) for n in range(6)] == [
            1000, 2000, 4000, 8000, 10_000, 10_000,
        ]

    def test_jitter_is_bounded(self, breaker):
        """Jitter adds at most jitter_ms."""
        policy = RetryPolicy(breaker, jitter_ms=500, rng=random.Random(7))

        for attempt in range(4):
            delay = policy.backoff_ms(attempt)
            base = min(1000 * 2 ** attempt, 10_000)
            assert base <= delay <= base + 500

    @pytest.mark.asyncio
    async def test_max_retries_override(self, policy):
        """Per-call override limits attempts."""
        fn = AsyncMock(side_effect=TransientError("down"))

        with pytest.raises(TransientError):
            await policy.call(fn, max_retries=0)

        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_negative_max_retries_rejected(self, policy):
        """A negative retry count is an error, not a silent no-op."""
        fn = AsyncMock(return_value="ok")

        with pytest.raises(ValueError):
            await policy.call(fn, max_retries=-1)

        fn.assert_not_awaited()
