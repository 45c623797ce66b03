"""
Unit tests for the sync reconciler.

Tests cover:
- FIFO drain per entity with re-basing of chained edits
- Conflict and permanent failure halting an entity
- Transient failure stopping the pass and deferring the next one
- Skipped passes (circuit open, overlapping pass)
- Refresh of touched entities
- Scheduled loop start/stop
- Unexpected errors requeue the mutation and never stop the loop
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from sdk.possync_sdk.circuit import CircuitBreaker
from sdk.possync_sdk.concurrency import OptimisticConcurrencyController
from sdk.possync_sdk.errors import ConflictError, NotFoundError, TransientError
from sdk.possync_sdk.models import MutationStatus
from sdk.possync_sdk.queue import InMemoryMutationStore, OfflineMutationQueue
from sdk.possync_sdk.reconciler import SyncReconciler
from sdk.possync_sdk.retry import RetryPolicy


class FakeServer:
    """Versioned product records answering like the inventory API."""

    def __init__(self) -> None:
        self.records = {}
        self.writes = []
        self.fail_with = {}

    async def update_product(self, entity_id, version, fields, *, idempotency_key, location_id=None):
        self.writes.append((entity_id, version, idempotency_key))
        error = self.fail_with.get(entity_id)
        if error is not None:
            raise error
        record = self.records.setdefault(entity_id, {"id": entity_id, "version": version})
        if record["version"] != version:
            raise ConflictError("stale", body={"current": dict(record)})
        record.update(fields)
        record["version"] = version + 1
        return dict(record)

    async def get_product(self, entity_id, *, location_id=None):
        if entity_id not in self.records:
            raise NotFoundError("gone", resource_id=entity_id)
        return dict(self.records[entity_id])


class TestSyncReconciler:
    """Tests for SyncReconciler."""

    @pytest.fixture
    def server(self):
        server = FakeServer()
        server.records = {
            "p1": {"id": "p1", "version": 5, "quantity": 3},
            "p2": {"id": "p2", "version": 1, "quantity": 8},
        }
        return server

    @pytest.fixture
    def breaker(self):
        return CircuitBreaker(failure_threshold=5, cooldown_ms=30_000)

    @pytest.fixture
    def transport(self, server):
        transport = MagicMock()
        transport.update_product = AsyncMock(side_effect=server.update_product)
        transport.get_product = AsyncMock(side_effect=server.get_product)
        transport.health = AsyncMock(return_value={"status": "ok"})
        return transport

    @pytest.fixture
    def queue(self):
        return OfflineMutationQueue(InMemoryMutationStore(), max_attempts=5)

    @pytest.fixture
    def reconciler(self, queue, transport, breaker):
        policy = RetryPolicy(breaker, max_retries=0, jitter_ms=0)
        controller = OptimisticConcurrencyController(transport, policy)
        return SyncReconciler(
            queue,
            controller,
            breaker,
            transport,
            interval_seconds=30,
            fanout=1,
            max_backoff_seconds=300,
        )

    @pytest.mark.asyncio
    async def test_drains_fifo_and_rebases(self, reconciler, queue, server):
        """Chained edits for one entity land in order on successive versions."""
        await queue.enqueue("p1", 5, {"quantity": 2}, "a")
        await queue.enqueue("p2", 1, {"quantity": 7}, "b")
        await queue.enqueue("p1", 5, {"quantity": 1}, "c")

        summary = await reconciler.run_once()

        assert summary.synced == 3
        assert summary.conflicts == 0
        assert await queue.pending_count() == 0
        p1_writes = [w for w in server.writes if w[0] == "p1"]
        assert p1_writes == [("p1", 5, "a"), ("p1", 6, "c")]
        assert server.records["p1"] == {"id": "p1", "version": 7, "quantity": 1}
        assert summary.refreshed == 2

    @pytest.mark.asyncio
    async def test_conflict_halts_entity(self, reconciler, queue, server):
        """A conflict holds the entity while others keep syncing."""
        server.records["p1"]["version"] = 6
        await queue.enqueue("p1", 5, {"quantity": 2}, "a")
        await queue.enqueue("p1", 5, {"quantity": 1}, "b")
        await queue.enqueue("p2", 1, {"quantity": 7}, "c")

        summary = await reconciler.run_once()

        assert summary.conflicts == 1
        assert summary.synced == 1
        assert summary.conflicted_entities == ["p1"]
        held = await queue.get("a")
        assert held.status == MutationStatus.CONFLICTED
        assert held.server_state["version"] == 6
        assert (await queue.get("b")).status == MutationStatus.PENDING
        assert [w[2] for w in server.writes] == ["a", "c"]

    @pytest.mark.asyncio
    async def test_missing_entity_fails_permanently(self, reconciler, queue, server):
        """A deleted entity marks its mutation failed_permanent."""
        server.fail_with["p1"] = NotFoundError("gone", resource_id="p1")
        await queue.enqueue("p1", 5, {"quantity": 2}, "a")

        summary = await reconciler.run_once()

        assert summary.failures == 1
        assert (await queue.get("a")).status == MutationStatus.FAILED_PERMANENT

    @pytest.mark.asyncio
    async def test_transient_failure_defers_pass(self, reconciler, queue, server):
        """A transient failure stops the pass and backs off the schedule."""
        server.fail_with["p1"] = TransientError("down", status=503)
        await queue.enqueue("p1", 5, {"quantity": 2}, "a")
        await queue.enqueue("p2", 1, {"quantity": 7}, "b")

        summary = await reconciler.run_once()

        assert summary.synced == 0
        assert summary.deferred == 2
        assert [w[2] for w in server.writes] == ["a"]
        mutation = await queue.get("a")
        assert mutation.status == MutationStatus.PENDING
        assert mutation.attempt_count == 1
        assert reconciler.next_delay() == 60
        assert summary.refreshed == 0

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, reconciler, queue, server):
        """Repeated failures never defer beyond max_backoff_seconds."""
        server.fail_with["p1"] = TransientError("down", status=503)
        await queue.enqueue("p1", 5, {"quantity": 2}, "a")

        for _ in range(4):
            await reconciler.run_once()

        assert reconciler.next_delay() == 300

    @pytest.mark.asyncio
    async def test_network_regained_ignores_deferral(self, reconciler, queue, server):
        """Explicit triggers run immediately and reset the backoff."""
        server.fail_with["p1"] = TransientError("down", status=503)
        await queue.enqueue("p1", 5, {"quantity": 2}, "a")
        await reconciler.run_once()

        del server.fail_with["p1"]
        summary = await reconciler.notify_network_regained()

        assert summary.synced == 1
        assert reconciler.next_delay() == 30

    @pytest.mark.asyncio
    async def test_skips_when_circuit_open(self, reconciler, queue, breaker, transport):
        """Nothing is sent while the circuit is open."""
        await queue.enqueue("p1", 5, {"quantity": 2}, "a")
        for _ in range(5):
            breaker.record_failure()

        summary = await reconciler.run_once()

        assert summary.skipped == "circuit_open"
        assert not summary.ran
        transport.health.assert_not_awaited()
        transport.update_product.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retry_now_resets_breaker(self, reconciler, queue, breaker):
        """Manual retry closes the circuit and syncs."""
        await queue.enqueue("p1", 5, {"quantity": 2}, "a")
        for _ in range(5):
            breaker.record_failure()

        summary = await reconciler.retry_now()

        assert summary.synced == 1

    @pytest.mark.asyncio
    async def test_overlapping_pass_is_skipped(self, reconciler, transport):
        """Only one pass runs at a time."""
        release = asyncio.Event()

        async def slow_health(**kwargs):
            await release.wait()
            return {"status": "ok"}

        transport.health.side_effect = slow_health

        first = asyncio.create_task(reconciler.run_once())
        await asyncio.sleep(0)
        assert reconciler.in_progress

        second = await reconciler.run_once()
        assert second.skipped == "in_progress"

        release.set()
        assert (await first).ran

    @pytest.mark.asyncio
    async def test_health_probe_failure_ignored(self, reconciler, queue, transport):
        """A failed warm-up probe does not stop the pass."""
        transport.health.side_effect = TransientError("cold start")
        await queue.enqueue("p1", 5, {"quantity": 2}, "a")

        summary = await reconciler.run_once()

        assert summary.synced == 1

    @pytest.mark.asyncio
    async def test_touched_entities_refreshed(self, reconciler, transport, server):
        """Entities marked touched are pulled after a clean pass."""
        server.records["p2"]["quantity"] = 4
        reconciler.mark_touched(["p2"])

        summary = await reconciler.run_once()

        assert summary.refreshed == 1
        assert reconciler.controller.cache.get("p2").fields["quantity"] == 4

    @pytest.mark.asyncio
    async def test_listeners_receive_summaries(self, reconciler):
        """Subscribers see every pass."""
        seen = []
        reconciler.subscribe(seen.append)

        await reconciler.run_once()

        assert len(seen) == 1
        assert reconciler.last_summary is seen[0]

    @pytest.mark.asyncio
    async def test_scheduled_loop(self, queue, transport, breaker):
        """start() runs passes on the interval until stop()."""
        policy = RetryPolicy(breaker, max_retries=0, jitter_ms=0)
        controller = OptimisticConcurrencyController(transport, policy)
        reconciler = SyncReconciler(
            queue, controller, breaker, transport, interval_seconds=0.01
        )
        await queue.enqueue("p1", 5, {"quantity": 2}, "a")

        task = asyncio.create_task(reconciler.start())
        for _ in range(100):
            if await queue.pending_count() == 0:
                break
            await asyncio.sleep(0.01)
        await reconciler.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert await queue.pending_count() == 0
        assert reconciler.stats["pass_count"] >= 1
        assert reconciler.stats["running"] is False

    @pytest.mark.asyncio
    async def test_unexpected_error_requeues_mutation(self, reconciler, queue, server):
        """A mutation whose sync raises goes back to pending and is counted."""
        server.fail_with["p1"] = ValueError("malformed response body")
        await queue.enqueue("p1", 5, {"quantity": 2}, "a")
        await queue.enqueue("p2", 1, {"quantity": 7}, "b")

        summary = await reconciler.run_once()

        assert summary.errors == 1
        assert summary.synced == 1
        held = await queue.get("a")
        assert held.status == MutationStatus.PENDING
        assert held.attempt_count == 1
        assert "ValueError" in held.last_error
        assert await queue.entities_with_pending() == ["p1"]

    @pytest.mark.asyncio
    async def test_repeated_error_fails_permanently(self, reconciler, queue, server):
        """A mutation that always errors ends failed_permanent."""
        server.fail_with["p1"] = ValueError("malformed response body")
        await queue.enqueue("p1", 5, {"quantity": 2}, "a")

        for _ in range(5):
            await reconciler.run_once()

        assert (await queue.get("a")).status == MutationStatus.FAILED_PERMANENT
        assert reconciler.last_summary.failures == 1

    @pytest.mark.asyncio
    async def test_scheduled_loop_survives_failed_pass(self, queue, transport, breaker):
        """A pass that raises is logged and the next pass still runs."""
        policy = RetryPolicy(breaker, max_retries=0, jitter_ms=0)
        controller = OptimisticConcurrencyController(transport, policy)
        reconciler = SyncReconciler(
            queue, controller, breaker, transport, interval_seconds=0.01
        )
        await queue.enqueue("p1", 5, {"quantity": 2}, "a")

        list_pending = queue.entities_with_pending
        calls = []

        async def flaky_entities_with_pending():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("storage unavailable")
            return await list_pending()

        queue.entities_with_pending = flaky_entities_with_pending

        task = asyncio.create_task(reconciler.start())
        for _ in range(200):
            if await queue.pending_count() == 0:
                break
            await asyncio.sleep(0.01)
        assert reconciler.stats["running"] is True
        await reconciler.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert len(calls) >= 2
        assert await queue.pending_count() == 0
        assert not reconciler.in_progress

    def test_invalid_fanout(self, queue, transport, breaker):
        """fanout must be positive."""
        controller = MagicMock()
        with pytest.raises(ValueError):
            SyncReconciler(queue, controller, breaker, transport, fanout=0)
