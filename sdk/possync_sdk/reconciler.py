"""
Sync reconciler for PosSync SDK.

The reconciler drains the offline mutation queue when the backend is
reachable and pulls fresh authoritative state for entities that were
touched locally. It runs on a fixed interval and on explicit triggers
(network regained, manual retry).

A pass:
    1. Skip if the circuit is open
    2. Send a best-effort health probe to warm a cold backend
    3. Drain every entity with pending work, FIFO per entity, up to
       `fanout` entities concurrently
    4. Refresh touched entities; entities with queued work keep their
       optimistic fields
    5. Publish a SyncSummary

Invariants:
    - At most one pass runs at a time; an overlapping request is skipped
    - A conflicted or failed mutation halts its entity for the pass
    - After a transient failure no further mutation is started in the pass
      and the next scheduled pass is deferred by exponential backoff
    - Explicit triggers ignore the deferral
    - A mutation whose sync raises is returned to the queue with an attempt
      counted; a pass that raises is logged and the loop keeps running

How to change safely:
    - Keep the drain per entity sequential; only entities fan out
    - Test with the server unreachable mid-drain
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional, Set

from ._http_client import HttpTransport
from .circuit import CircuitBreaker, CircuitState
from .concurrency import OptimisticConcurrencyController, UpdateStatus
from .errors import PosSyncError, QueueError, TransientError
from .models import MutationStatus, PendingMutation
from .queue import OfflineMutationQueue

logger = logging.getLogger(__name__)

HEALTH_PROBE_TIMEOUT_SECONDS = 5.0


@dataclass
class SyncSummary:
    """Outcome of one reconciliation pass.

    Attributes:
        synced: Mutations acknowledged by the server
        conflicts: Mutations that hit a version conflict
        failures: Mutations marked failed_permanent
        deferred: Mutations left queued after a transient failure
        errors: Mutations whose sync raised an unexpected error
        refreshed: Entities refreshed from the server
        duration_ms: Wall time of the pass
        skipped: "in_progress" or "circuit_open" when the pass did not run
        conflicted_entities: Entities that conflicted this pass
    """

    synced: int = 0
    conflicts: int = 0
    failures: int = 0
    deferred: int = 0
    errors: int = 0
    refreshed: int = 0
    duration_ms: int = 0
    skipped: Optional[str] = None
    conflicted_entities: List[str] = field(default_factory=list)

    @property
    def ran(self) -> bool:
        return self.skipped is None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "synced": self.synced,
            "conflicts": self.conflicts,
            "failures": self.failures,
            "deferred": self.deferred,
            "errors": self.errors,
            "refreshed": self.refreshed,
            "duration_ms": self.duration_ms,
            "skipped": self.skipped,
        }


class SyncReconciler:
    """Drains the offline queue and reconciles local state with the server.

    Thread safety:
        Designed to run as a single task per process.

    Example:
        >>> reconciler = SyncReconciler(queue, controller, breaker, transport)
        >>> summary = await reconciler.run_once()
        >>> task = asyncio.create_task(reconciler.start())
    """

    def __init__(
        self,
        queue: OfflineMutationQueue,
        controller: OptimisticConcurrencyController,
        breaker: CircuitBreaker,
        transport: HttpTransport,
        *,
        interval_seconds: float = 30.0,
        fanout: int = 4,
        max_backoff_seconds: float = 300.0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        """Initialize the reconciler.

        Args:
            queue: Offline mutation queue to drain
            controller: Controller used to submit and refresh
            breaker: Shared circuit breaker
            transport: HTTP transport (health probe)
            interval_seconds: Period between scheduled passes
            fanout: Entities drained concurrently
            max_backoff_seconds: Upper bound of the deferral after failures
            clock: Monotonic clock in seconds (injectable for tests)
        """
        if fanout < 1:
            raise ValueError("fanout must be >= 1")
        self.queue = queue
        self.controller = controller
        self.breaker = breaker
        self.transport = transport
        self.interval_seconds = interval_seconds
        self.fanout = fanout
        self.max_backoff_seconds = max_backoff_seconds
        self._clock = clock or time.monotonic

        self._running = False
        self._in_progress = False
        self._wake = asyncio.Event()
        self._backoff_level = 0
        self._touched: Set[str] = set()
        self._listeners: List[Callable[[SyncSummary], None]] = []
        self._pass_count = 0
        self._last_summary: Optional[SyncSummary] = None

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    @property
    def last_summary(self) -> Optional[SyncSummary]:
        return self._last_summary

    def subscribe(self, listener: Callable[[SyncSummary], None]) -> Callable[[], None]:
        """Register a listener for pass summaries."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def mark_touched(self, entity_ids: Iterable[str]) -> None:
        """Schedule entities for refresh on the next pass."""
        self._touched.update(entity_ids)

    def next_delay(self) -> float:
        """Seconds until the next scheduled pass, backoff included."""
        if self._backoff_level == 0:
            return self.interval_seconds
        return min(
            self.interval_seconds * (2 ** self._backoff_level),
            self.max_backoff_seconds,
        )

    async def start(self) -> None:
        """Run scheduled passes until stop() is called."""
        if self._running:
            logger.warning("Reconciler already running")
            return

        self._running = True
        logger.info(
            "Starting reconciler",
            extra={"interval_seconds": self.interval_seconds, "fanout": self.fanout},
        )

        try:
            while self._running:
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self.next_delay())
                except asyncio.TimeoutError:
                    pass
                self._wake.clear()
                if not self._running:
                    break
                try:
                    await self.run_once()
                except Exception as e:
                    self._backoff_level += 1
                    logger.error(f"Sync pass failed: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.info("Reconciler cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the scheduled loop."""
        self._running = False
        self._wake.set()
        logger.info("Stopping reconciler")

    async def notify_network_regained(self) -> SyncSummary:
        """Run a pass now because connectivity came back."""
        logger.info("Network regained, syncing")
        self._backoff_level = 0
        return await self.run_once()

    async def retry_now(self) -> SyncSummary:
        """Manual retry: reset the breaker and run a pass now."""
        logger.info("Manual sync requested")
        self.breaker.reset()
        self._backoff_level = 0
        return await self.run_once()

    async def run_once(self) -> SyncSummary:
        """Run one reconciliation pass."""
        if self._in_progress:
            logger.debug("Sync pass already running, skipping")
            return self._publish(SyncSummary(skipped="in_progress"))

        if self.breaker.state == CircuitState.OPEN:
            logger.debug("Circuit open, skipping sync pass")
            return self._publish(SyncSummary(skipped="circuit_open"))

        self._in_progress = True
        started = self._clock()
        summary = SyncSummary()
        try:
            await self._warm_up()

            entities = await self.queue.entities_with_pending()
            stop_drain = asyncio.Event()
            semaphore = asyncio.Semaphore(self.fanout)
            await asyncio.gather(
                *(
                    self._drain_entity(entity_id, semaphore, stop_drain, summary)
                    for entity_id in entities
                )
            )

            if stop_drain.is_set():
                summary.deferred = (await self.queue.counts())[MutationStatus.PENDING.value]
                self._backoff_level += 1
            else:
                self._backoff_level = 0
                await self._refresh_touched(summary)
        finally:
            self._in_progress = False

        summary.duration_ms = int((self._clock() - started) * 1000)
        self._pass_count += 1
        return self._publish(summary)

    async def _warm_up(self) -> None:
        try:
            await self.transport.health(timeout=HEALTH_PROBE_TIMEOUT_SECONDS)
        except PosSyncError as e:
            logger.debug(f"Health probe failed (ignored): {e}")

    async def _drain_entity(
        self,
        entity_id: str,
        semaphore: asyncio.Semaphore,
        stop_drain: asyncio.Event,
        summary: SyncSummary,
    ) -> None:
        async with semaphore:
            while not stop_drain.is_set():
                head = await self.queue.head(entity_id)
                if head is None or head.status != MutationStatus.PENDING:
                    break

                await self.queue.mark_in_flight(head.idempotency_key)
                self._touched.add(entity_id)
                try:
                    keep_going = await self._send_head(head, stop_drain, summary)
                except Exception as e:
                    logger.error(
                        f"Sync of queued mutation failed: {e}",
                        extra={
                            "entity_id": entity_id,
                            "idempotency_key": head.idempotency_key,
                        },
                        exc_info=True,
                    )
                    summary.errors += 1
                    await self._settle_after_error(head, e, summary)
                    break
                if not keep_going:
                    break

    async def _send_head(
        self,
        head: PendingMutation,
        stop_drain: asyncio.Event,
        summary: SyncSummary,
    ) -> bool:
        """Submit an in-flight head and record the outcome in the queue.

        Returns True when the entity may continue draining.
        """
        more_queued = await self.queue.pending_count(head.entity_id) > 1
        result = await self.controller.submit(
            head.entity_id,
            head.base_version,
            head.payload,
            head.idempotency_key,
            location_id=head.location_id,
            keep_local_fields=more_queued,
        )

        if result.status == UpdateStatus.ACCEPTED:
            new_version = result.entity.version if result.entity is not None else None
            await self.queue.acknowledge(head.idempotency_key, new_version=new_version)
            summary.synced += 1
            return True

        if result.status == UpdateStatus.CONFLICTED:
            server_state = result.server_state.to_dict() if result.server_state else None
            await self.queue.mark_conflicted(head.idempotency_key, server_state)
            summary.conflicts += 1
            summary.conflicted_entities.append(head.entity_id)
        elif result.status in (UpdateStatus.MISSING, UpdateStatus.REJECTED):
            await self.queue.mark_failed_permanent(
                head.idempotency_key, result.error or result.status.value
            )
            summary.failures += 1
        else:
            if result.suppressed:
                await self.queue.release(head.idempotency_key)
            else:
                updated = await self.queue.record_transient_failure(
                    head.idempotency_key, result.error or "transient failure"
                )
                if updated.status == MutationStatus.FAILED_PERMANENT:
                    summary.failures += 1
            stop_drain.set()
        return False

    async def _settle_after_error(
        self,
        head: PendingMutation,
        error: Exception,
        summary: SyncSummary,
    ) -> None:
        # Counts as an attempt: a mutation that always errors ends failed_permanent.
        try:
            updated = await self.queue.record_transient_failure(
                head.idempotency_key, f"{type(error).__name__}: {error}"
            )
        except QueueError as e:
            logger.warning(
                f"Could not return mutation to the queue: {e}",
                extra={"idempotency_key": head.idempotency_key},
            )
            return
        if updated.status == MutationStatus.FAILED_PERMANENT:
            summary.failures += 1

    async def _refresh_touched(self, summary: SyncSummary) -> None:
        touched = sorted(self._touched)
        for entity_id in touched:
            keep_local = await self.queue.has_pending(entity_id)
            try:
                await self.controller.refresh(entity_id, keep_local_fields=keep_local)
            except TransientError as e:
                logger.info(f"Refresh interrupted: {e}")
                return
            self._touched.discard(entity_id)
            summary.refreshed += 1

    def _publish(self, summary: SyncSummary) -> SyncSummary:
        self._last_summary = summary
        if summary.ran:
            logger.info("Sync pass finished", extra=summary.to_dict())
        for listener in list(self._listeners):
            try:
                listener(summary)
            except Exception as e:
                logger.error(f"Sync listener failed: {e}", exc_info=True)
        return summary

    @property
    def stats(self) -> dict[str, Any]:
        """Get reconciler statistics."""
        return {
            "running": self._running,
            "in_progress": self._in_progress,
            "pass_count": self._pass_count,
            "backoff_level": self._backoff_level,
            "next_delay_seconds": self.next_delay(),
            "last_summary": self._last_summary.to_dict() if self._last_summary else None,
        }
