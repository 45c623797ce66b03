"""
PosSync client for Python SDK.

This module provides the main client interface:
- InventoryClient: Resilient inventory access for one device session

The client owns the single circuit breaker and offline queue of the
process and wires them into the controller, deduction client and
reconciler. Every mutation goes through InventoryClient.update(), which
decides between a direct write and the offline queue.

Example:
    >>> async with InventoryClient(ClientConfig.from_env()) as client:
    ...     result = await client.update("p1", lambda f: {**f, "price": 12.5})
    ...     if result.conflicted:
    ...         show_conflict(result)
    ...     sale = await client.checkout("store-1", [StockLine("p1", 1)],
    ...                                  idempotency_key=new_idempotency_key())

Invariants:
    - One breaker and one queue per client
    - A mutation is queued whenever the circuit is open, the device is
      offline or the entity already has queued work
    - While the circuit is open the client is read-only for direct writes
    - At most one update per entity is between staging and send/enqueue
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

from ._http_client import HttpTransport
from .circuit import CircuitBreaker, CircuitState
from .concurrency import (
    ConflictEvent,
    EntityCache,
    Mutator,
    OptimisticConcurrencyController,
    UpdateResult,
    UpdateStatus,
)
from .config import ClientConfig
from .deduction import CheckoutResult, DeductionResult, StockDeductionClient
from .errors import NotFoundError, PosSyncError, QueueError, TransientError
from .models import PendingMutation, StockLine, VersionedEntity, new_idempotency_key
from .queue import (
    ConflictStrategy,
    MutationStore,
    OfflineMutationQueue,
    QueueDegradedEvent,
    create_mutation_store,
)
from .reconciler import SyncReconciler, SyncSummary
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class InventoryClient:
    """Resilient client for the inventory API.

    Args:
        config: Client configuration (defaults for local development if omitted)
        transport: Optional httpx transport (ASGITransport in tests)
        store: Optional queue storage (built from config.queue if omitted)
        clock: Monotonic clock for breaker and reconciler (tests)
        sleep: Sleep coroutine for retry backoff (tests)
        rng: Random source for retry jitter (tests)
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        store: Optional[MutationStore] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config or ClientConfig()
        api = self.config.api

        headers = {"Authorization": f"Bearer {api.api_token}"} if api.api_token else None
        self.http = HttpTransport(
            api.base_url,
            timeout=api.request_timeout_seconds,
            transport=transport,
            headers=headers,
        )
        self.breaker = CircuitBreaker(
            failure_threshold=self.config.breaker.failure_threshold,
            cooldown_ms=self.config.breaker.cooldown_ms,
            clock=clock,
        )
        self.retry_policy = RetryPolicy(
            self.breaker,
            max_retries=self.config.retry.max_retries,
            initial_backoff_ms=self.config.retry.initial_backoff_ms,
            max_backoff_ms=self.config.retry.max_backoff_ms,
            jitter_ms=self.config.retry.jitter_ms,
            sleep=sleep,
            rng=rng,
        )
        self.cache = EntityCache()
        self.controller = OptimisticConcurrencyController(
            self.http,
            self.retry_policy,
            self.cache,
            location_id=api.location_id,
        )
        self.queue = OfflineMutationQueue(
            store if store is not None else create_mutation_store(self.config.queue.db_path),
            max_attempts=self.config.queue.max_attempts,
            max_pending=self.config.queue.max_pending,
        )
        self.reconciler = SyncReconciler(
            self.queue,
            self.controller,
            self.breaker,
            self.http,
            interval_seconds=self.config.sync.interval_seconds,
            fanout=self.config.sync.fanout,
            max_backoff_seconds=self.config.sync.max_backoff_seconds,
            clock=clock,
        )
        self.deductions = StockDeductionClient(
            self.http,
            self.retry_policy,
            on_touched=self.reconciler.mark_touched,
        )

        self._online = True
        self._connected = False
        self._sync_task: Optional[asyncio.Task[None]] = None
        self._entity_locks: Dict[str, asyncio.Lock] = {}

    async def connect(self) -> None:
        """Open the HTTP transport and the offline queue."""
        if self._connected:
            return
        await self.http.connect()
        recovered = await self.queue.open()
        self._connected = True
        logger.info(
            "Inventory client connected",
            extra={
                "base_url": self.http.base_url,
                "queue_durable": self.queue.is_durable,
                "recovered": recovered,
            },
        )

    async def close(self) -> None:
        """Stop background sync and release resources."""
        await self.stop_sync()
        if self._connected:
            await self.http.close()
            await self.queue.close()
            self._connected = False

    async def __aenter__(self) -> InventoryClient:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @property
    def online(self) -> bool:
        return self._online

    @property
    def read_only(self) -> bool:
        """True while the circuit is open and only last known data is shown."""
        return self.breaker.state == CircuitState.OPEN

    def set_online(self, online: bool) -> None:
        """Record the device's connectivity as reported by the platform."""
        if online != self._online:
            logger.info("Connectivity changed", extra={"online": online})
        self._online = online

    async def network_regained(self) -> SyncSummary:
        """Mark the device online and sync immediately."""
        self.set_online(True)
        return await self.reconciler.notify_network_regained()

    async def get(
        self,
        entity_id: str,
        *,
        refresh: bool = False,
    ) -> Optional[VersionedEntity]:
        """Get an entity, preferring the local view.

        When the server cannot be reached the last known copy is returned.
        """
        cached = self.cache.get(entity_id)
        if cached is not None and not refresh:
            return cached
        keep_local = await self.queue.has_pending(entity_id)
        try:
            return await self.controller.refresh(entity_id, keep_local_fields=keep_local)
        except TransientError as e:
            logger.info(f"Serving last known copy of {entity_id}: {e.message}")
            return cached

    async def update(
        self,
        entity_id: str,
        mutator: Mutator,
        *,
        idempotency_key: Optional[str] = None,
    ) -> UpdateResult:
        """Apply an edit optimistically and send or queue it.

        Queued writes come back as TRANSIENT results with queued=True.
        Updates to one entity are serialized: a second edit is staged only
        after the first has been accepted, rejected or queued.
        """
        key = idempotency_key or new_idempotency_key()
        async with self._entity_lock(entity_id):
            return await self._update_locked(entity_id, mutator, key)

    def _entity_lock(self, entity_id: str) -> asyncio.Lock:
        lock = self._entity_locks.get(entity_id)
        if lock is None:
            lock = self._entity_locks[entity_id] = asyncio.Lock()
        return lock

    async def _update_locked(
        self,
        entity_id: str,
        mutator: Mutator,
        key: str,
    ) -> UpdateResult:
        try:
            staged = await self.controller.stage_update(entity_id, mutator, idempotency_key=key)
        except NotFoundError as e:
            return UpdateResult(UpdateStatus.MISSING, entity_id, key, 0, error=e.message)
        except TransientError as e:
            return UpdateResult(
                UpdateStatus.TRANSIENT, entity_id, key, 0, error=e.message, error_code=e.code
            )

        has_queued_work = await self.queue.has_pending(entity_id)
        if not self._online or self.read_only or has_queued_work:
            await self.queue.enqueue(
                entity_id,
                staged.base_version,
                staged.payload,
                key,
                location_id=self.controller.location_id,
            )
            reason = "offline" if not self._online else (
                "circuit_open" if self.read_only else "queued_work"
            )
            logger.debug(
                "Update queued",
                extra={"entity_id": entity_id, "idempotency_key": key, "reason": reason},
            )
            return UpdateResult(
                UpdateStatus.TRANSIENT,
                entity_id,
                key,
                staged.base_version,
                attempted=staged.payload,
                error=f"Queued for sync ({reason})",
                queued=True,
            )

        result = await self.controller.submit(
            entity_id, staged.base_version, staged.payload, key
        )
        if result.status == UpdateStatus.TRANSIENT:
            await self.queue.enqueue(
                entity_id,
                staged.base_version,
                staged.payload,
                key,
                location_id=self.controller.location_id,
            )
            result.queued = True
        return result

    async def resolve_conflict(
        self,
        idempotency_key: str,
        strategy: ConflictStrategy,
    ) -> Optional[PendingMutation]:
        """Resolve a conflicted queued mutation.

        RETRY re-bases the mutation onto the server's current version and
        requeues it; DISCARD drops it and adopts the server's record.
        """
        mutation = await self.queue.get(idempotency_key)
        if mutation is None:
            raise QueueError("Unknown mutation", idempotency_key)

        server = (
            VersionedEntity.from_dict(mutation.server_state)
            if mutation.server_state
            else None
        )
        if strategy == ConflictStrategy.DISCARD:
            await self.queue.resolve_conflict(idempotency_key, strategy)
            if server is not None and not await self.queue.has_pending(mutation.entity_id):
                self.controller.resolve_keep_server(server)
            return None

        if server is None:
            server = await self.controller.refresh(mutation.entity_id, keep_local_fields=True)
            if server is None:
                raise NotFoundError(
                    f"Entity {mutation.entity_id} no longer exists",
                    resource_id=mutation.entity_id,
                )
        else:
            self.cache.accept_server_state(server, keep_local_fields=True)
        return await self.queue.resolve_conflict(
            idempotency_key, strategy, base_version=server.version
        )

    async def retry_failed(self, idempotency_key: str) -> PendingMutation:
        """Requeue a mutation that failed permanently."""
        return await self.queue.retry_failed(idempotency_key)

    async def pending_mutations(self) -> List[PendingMutation]:
        """Snapshot of every outstanding mutation, oldest first."""
        return await self.queue.snapshot()

    async def deduct(
        self,
        location_id: str,
        lines: Sequence[StockLine],
        *,
        idempotency_key: Optional[str] = None,
    ) -> DeductionResult:
        """Atomically deduct stock for every line."""
        return await self.deductions.deduct(
            location_id, lines, idempotency_key=idempotency_key
        )

    async def checkout(
        self,
        location_id: str,
        lines: Sequence[StockLine],
        *,
        idempotency_key: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> CheckoutResult:
        """Record a sale idempotently."""
        return await self.deductions.checkout(
            location_id, lines, idempotency_key=idempotency_key, extra=extra
        )

    async def sync_now(self) -> SyncSummary:
        """Manual retry: reset the breaker and run a sync pass."""
        return await self.reconciler.retry_now()

    def start_sync(self) -> asyncio.Task[None]:
        """Start the background reconciler loop."""
        if self._sync_task is None or self._sync_task.done():
            self._sync_task = asyncio.create_task(self.reconciler.start())
        return self._sync_task

    async def stop_sync(self) -> None:
        """Stop the background reconciler loop and wait for it."""
        if self._sync_task is None:
            return
        await self.reconciler.stop()
        task, self._sync_task = self._sync_task, None
        try:
            await asyncio.wait_for(task, timeout=5.0)
        except asyncio.TimeoutError:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def on_circuit_change(
        self, listener: Callable[[CircuitState, CircuitState], None]
    ) -> Callable[[], None]:
        return self.breaker.subscribe(listener)

    def on_entity(self, listener: Callable[[VersionedEntity], None]) -> Callable[[], None]:
        return self.cache.subscribe(listener)

    def on_conflict(self, listener: Callable[[ConflictEvent], None]) -> Callable[[], None]:
        return self.controller.subscribe_conflicts(listener)

    def on_sync(self, listener: Callable[[SyncSummary], None]) -> Callable[[], None]:
        return self.reconciler.subscribe(listener)

    def on_queue_degraded(
        self, listener: Callable[[QueueDegradedEvent], None]
    ) -> Callable[[], None]:
        return self.queue.subscribe_degraded(listener)

    async def health(self) -> Dict[str, Any]:
        """Client and server health summary."""
        try:
            server = await self.http.health(timeout=5.0)
        except PosSyncError as e:
            server = {"status": "unreachable", "error": e.message}
        return {
            "server": server,
            "circuit": self.breaker.stats(),
            "online": self._online,
            "queue": await self.queue.counts(),
            "reconciler": self.reconciler.stats,
        }
