"""
Offline mutation queue.

A durable, per-device, ordered log of mutations that were made while the
server was unreachable (or that failed transiently). The reconciler drains
it entity by entity once connectivity returns.

Lifecycle:
    pending -> in_flight -> acknowledged (row deleted)
                         -> conflicted (held until resolved)
                         -> pending (transient failure, attempt_count + 1)
                         -> failed_permanent (permanent 4xx or attempts exhausted)

Invariants:
    - Mutations for one entity are sent strictly in sequence order
    - A conflicted or failed_permanent head holds back every later mutation
      for the same entity; held mutations are never dropped or reordered
    - A conflicted mutation is never resent unless resolve_conflict() says so
    - The idempotency key of a mutation never changes
    - Rows left in_flight by a crash revert to pending on open()
    - Storage problems are reported once per session; enqueue keeps working

How to change safely:
    - Every transition goes through _write() so a full disk switches to the
      in-memory fallback instead of losing the mutation
    - Keep transitions under the lock; the reconciler drains concurrently
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from ..errors import QueueError, QueueStorageError
from ..models import MutationStatus, PendingMutation, new_idempotency_key, now_ms
from .base import MutationStore
from .memory import InMemoryMutationStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConflictStrategy(Enum):
    """How a conflicted mutation is resolved."""

    RETRY = "retry"
    DISCARD = "discard"


@dataclass(frozen=True)
class QueueDegradedEvent:
    """Published once per session when the queue can no longer keep up.

    Attributes:
        reason: "max_pending" or "storage_full"
        pending: Outstanding mutations at the time
        message: Human-readable warning
    """

    reason: str
    pending: int
    message: str


class OfflineMutationQueue:
    """Ordered, durable queue of PendingMutations keyed by entity.

    Args:
        store: Storage backend
        max_attempts: Transient failures before a mutation fails permanently
        max_pending: Soft limit that triggers the degraded warning

    Example:
        >>> queue = OfflineMutationQueue(SqliteMutationStore("queue.db"))
        >>> await queue.open()
        >>> m = await queue.enqueue("p1", base_version=5, payload={"quantity": 3})
        >>> head = await queue.head("p1")
    """

    def __init__(
        self,
        store: MutationStore,
        max_attempts: int = 5,
        max_pending: int = 5000,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._store = store
        self.max_attempts = max_attempts
        self.max_pending = max_pending
        self._lock = asyncio.Lock()
        self._degraded_warned = False
        self._listeners: List[Callable[[PendingMutation], None]] = []
        self._degraded_listeners: List[Callable[[QueueDegradedEvent], None]] = []

    @property
    def store(self) -> MutationStore:
        return self._store

    @property
    def is_durable(self) -> bool:
        return self._store.is_durable

    async def open(self) -> int:
        """Open the store and recover mutations interrupted mid-send.

        Returns:
            Number of in_flight mutations reverted to pending
        """
        await self._store.open()
        recovered = 0
        async with self._lock:
            for mutation in await self._store.list_all():
                if mutation.status == MutationStatus.IN_FLIGHT:
                    await self._store.update(mutation.transition(status=MutationStatus.PENDING))
                    recovered += 1
        if recovered:
            logger.info(
                "Recovered interrupted mutations",
                extra={"recovered": recovered},
            )
        return recovered

    async def close(self) -> None:
        await self._store.close()

    def subscribe(self, listener: Callable[[PendingMutation], None]) -> Callable[[], None]:
        """Register a listener called with every mutation after a transition.

        Acknowledged and discarded mutations are delivered one last time
        before they disappear.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def subscribe_degraded(
        self, listener: Callable[[QueueDegradedEvent], None]
    ) -> Callable[[], None]:
        """Register a listener for the once-per-session degraded warning."""
        self._degraded_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._degraded_listeners:
                self._degraded_listeners.remove(listener)

        return unsubscribe

    async def enqueue(
        self,
        entity_id: str,
        base_version: int,
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None,
        *,
        location_id: Optional[str] = None,
    ) -> PendingMutation:
        """Append a mutation for an entity.

        Enqueueing a key that is already queued returns the queued mutation
        unchanged.
        """
        key = idempotency_key or new_idempotency_key()
        async with self._lock:
            existing = await self._store.get(key)
            if existing is not None:
                return existing

            mutation = PendingMutation(
                idempotency_key=key,
                entity_id=entity_id,
                base_version=base_version,
                payload=payload,
                created_at=now_ms(),
                location_id=location_id,
            )
            stored = await self._write(lambda store: store.insert(mutation))
            outstanding = len(await self._store.list_all())

        logger.debug(
            "Enqueued mutation",
            extra={
                "entity_id": entity_id,
                "idempotency_key": key,
                "sequence": stored.sequence,
            },
        )
        if outstanding > self.max_pending:
            self._warn_degraded(
                "max_pending",
                outstanding,
                f"{outstanding} changes are waiting to sync. "
                "They are kept, but please reconnect soon.",
            )
        self._notify(stored)
        return stored

    async def get(self, idempotency_key: str) -> Optional[PendingMutation]:
        return await self._store.get(idempotency_key)

    async def head(self, entity_id: str) -> Optional[PendingMutation]:
        """Oldest outstanding mutation for an entity, whatever its status."""
        mutations = await self._store.list_for_entity(entity_id)
        return mutations[0] if mutations else None

    async def entities_with_pending(self) -> List[str]:
        """Entities whose head mutation is ready to send.

        Entities held back by a conflicted or failed head are excluded.
        Ordered by the sequence of their head mutation.
        """
        heads: Dict[str, PendingMutation] = {}
        for mutation in await self._store.list_all():
            heads.setdefault(mutation.entity_id, mutation)
        return [
            entity_id
            for entity_id, head in heads.items()
            if head.status == MutationStatus.PENDING
        ]

    async def blocked_entities(self) -> List[str]:
        """Entities whose head is conflicted or failed_permanent."""
        heads: Dict[str, PendingMutation] = {}
        for mutation in await self._store.list_all():
            heads.setdefault(mutation.entity_id, mutation)
        return [entity_id for entity_id, head in heads.items() if head.status.blocks_entity]

    async def mark_in_flight(self, idempotency_key: str) -> PendingMutation:
        """Claim a pending head mutation for sending."""
        async with self._lock:
            mutation = await self._require(idempotency_key)
            if mutation.status != MutationStatus.PENDING:
                raise QueueError(
                    f"Cannot send mutation in status {mutation.status.value}",
                    idempotency_key,
                )
            head = await self.head(mutation.entity_id)
            if head is not None and head.idempotency_key != idempotency_key:
                raise QueueError("Mutation is not at the head of its entity", idempotency_key)
            updated = mutation.transition(status=MutationStatus.IN_FLIGHT)
            await self._write(lambda store: store.update(updated))
        self._notify(updated)
        return updated

    async def release(self, idempotency_key: str) -> PendingMutation:
        """Return an in_flight mutation to pending without counting an attempt.

        Used when the request was suppressed locally and never reached
        the network.
        """
        async with self._lock:
            mutation = await self._require(idempotency_key)
            if mutation.status != MutationStatus.IN_FLIGHT:
                raise QueueError(
                    f"Cannot release mutation in status {mutation.status.value}",
                    idempotency_key,
                )
            updated = mutation.transition(status=MutationStatus.PENDING)
            await self._write(lambda store: store.update(updated))
        self._notify(updated)
        return updated

    async def acknowledge(
        self,
        idempotency_key: str,
        *,
        new_version: Optional[int] = None,
    ) -> PendingMutation:
        """Remove a mutation the server applied.

        When new_version is given, later mutations for the same entity that
        were computed on top of this one (same base_version) are re-based
        onto the version the server just assigned.
        """
        async with self._lock:
            mutation = await self._require(idempotency_key)
            await self._write(lambda store: store.delete(idempotency_key))
            rebased: List[PendingMutation] = []
            if new_version is not None:
                for later in await self._store.list_for_entity(mutation.entity_id):
                    if later.base_version == mutation.base_version:
                        moved = later.transition(base_version=new_version)
                        await self._write(lambda store, m=moved: store.update(m))
                        rebased.append(moved)

        done = mutation.transition(status=MutationStatus.ACKNOWLEDGED)
        logger.debug(
            "Acknowledged mutation",
            extra={
                "entity_id": mutation.entity_id,
                "idempotency_key": idempotency_key,
                "rebased": len(rebased),
            },
        )
        self._notify(done)
        for moved in rebased:
            self._notify(moved)
        return done

    async def mark_conflicted(
        self,
        idempotency_key: str,
        server_state: Optional[Dict[str, Any]],
    ) -> PendingMutation:
        """Hold a mutation whose base version no longer matches the server."""
        return await self._transition(
            idempotency_key,
            status=MutationStatus.CONFLICTED,
            server_state=server_state,
            last_error="Version conflict",
        )

    async def record_transient_failure(
        self,
        idempotency_key: str,
        error: str,
    ) -> PendingMutation:
        """Count a transient failure; fails permanently after max_attempts."""
        async with self._lock:
            mutation = await self._require(idempotency_key)
            attempts = mutation.attempt_count + 1
            status = (
                MutationStatus.FAILED_PERMANENT
                if attempts >= self.max_attempts
                else MutationStatus.PENDING
            )
            updated = mutation.transition(
                attempt_count=attempts, status=status, last_error=error
            )
            await self._write(lambda store: store.update(updated))

        if status == MutationStatus.FAILED_PERMANENT:
            logger.warning(
                "Mutation failed after exhausting attempts",
                extra={
                    "entity_id": updated.entity_id,
                    "idempotency_key": idempotency_key,
                    "attempts": attempts,
                },
            )
        self._notify(updated)
        return updated

    async def mark_failed_permanent(
        self,
        idempotency_key: str,
        error: str,
    ) -> PendingMutation:
        """Hold a mutation the server rejected permanently."""
        return await self._transition(
            idempotency_key,
            status=MutationStatus.FAILED_PERMANENT,
            last_error=error,
        )

    async def resolve_conflict(
        self,
        idempotency_key: str,
        strategy: ConflictStrategy,
        *,
        base_version: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[PendingMutation]:
        """Resolve a conflicted mutation.

        Args:
            idempotency_key: Conflicted mutation
            strategy: RETRY re-bases and requeues it (with later mutations
                that shared its old base), DISCARD drops it
            base_version: Refreshed base version (required for RETRY)
            payload: Replacement payload for RETRY (defaults to the original)

        Returns:
            The requeued mutation, or None when discarded
        """
        async with self._lock:
            mutation = await self._require(idempotency_key)
            if mutation.status != MutationStatus.CONFLICTED:
                raise QueueError(
                    f"Mutation is not conflicted ({mutation.status.value})",
                    idempotency_key,
                )
            rebased: List[PendingMutation] = []
            if strategy == ConflictStrategy.DISCARD:
                await self._write(lambda store: store.delete(idempotency_key))
                updated = None
            else:
                if base_version is None:
                    raise QueueError("RETRY needs a refreshed base_version", idempotency_key)
                updated = mutation.transition(
                    status=MutationStatus.PENDING,
                    base_version=base_version,
                    payload=payload if payload is not None else mutation.payload,
                    attempt_count=0,
                    server_state=None,
                    last_error=None,
                )
                await self._write(lambda store: store.update(updated))
                for later in await self._store.list_for_entity(mutation.entity_id):
                    if (
                        later.sequence > mutation.sequence
                        and later.base_version == mutation.base_version
                    ):
                        moved = later.transition(base_version=base_version)
                        await self._write(lambda store, m=moved: store.update(m))
                        rebased.append(moved)

        logger.info(
            "Resolved conflict",
            extra={
                "entity_id": mutation.entity_id,
                "idempotency_key": idempotency_key,
                "strategy": strategy.value,
                "rebased": len(rebased),
            },
        )
        self._notify(updated or mutation.transition(status=MutationStatus.ACKNOWLEDGED))
        for moved in rebased:
            self._notify(moved)
        return updated

    async def retry_failed(self, idempotency_key: str) -> PendingMutation:
        """Requeue a failed_permanent mutation with a fresh attempt budget."""
        async with self._lock:
            mutation = await self._require(idempotency_key)
            if mutation.status != MutationStatus.FAILED_PERMANENT:
                raise QueueError(
                    f"Mutation has not failed ({mutation.status.value})",
                    idempotency_key,
                )
            updated = mutation.transition(
                status=MutationStatus.PENDING, attempt_count=0, last_error=None
            )
            await self._write(lambda store: store.update(updated))
        self._notify(updated)
        return updated

    async def discard(self, idempotency_key: str) -> PendingMutation:
        """Drop a held (conflicted or failed) mutation on explicit user request."""
        async with self._lock:
            mutation = await self._require(idempotency_key)
            if not mutation.status.blocks_entity:
                raise QueueError(
                    f"Only held mutations can be discarded ({mutation.status.value})",
                    idempotency_key,
                )
            await self._write(lambda store: store.delete(idempotency_key))
        self._notify(mutation.transition(status=MutationStatus.ACKNOWLEDGED))
        return mutation

    async def snapshot(self) -> List[PendingMutation]:
        """All outstanding mutations, oldest first."""
        return await self._store.list_all()

    async def counts(self) -> Dict[str, int]:
        """Outstanding mutations per status."""
        counter = Counter(m.status.value for m in await self._store.list_all())
        return {status.value: counter.get(status.value, 0) for status in MutationStatus}

    async def pending_count(self, entity_id: Optional[str] = None) -> int:
        """Outstanding mutations, for one entity or overall."""
        if entity_id is None:
            return len(await self._store.list_all())
        return len(await self._store.list_for_entity(entity_id))

    async def has_pending(self, entity_id: str) -> bool:
        return await self.pending_count(entity_id) > 0

    async def _require(self, idempotency_key: str) -> PendingMutation:
        mutation = await self._store.get(idempotency_key)
        if mutation is None:
            raise QueueError("Unknown mutation", idempotency_key)
        return mutation

    async def _transition(self, idempotency_key: str, **changes: Any) -> PendingMutation:
        async with self._lock:
            mutation = await self._require(idempotency_key)
            updated = mutation.transition(**changes)
            await self._write(lambda store: store.update(updated))
        logger.info(
            f"Mutation {updated.status.value}",
            extra={
                "entity_id": updated.entity_id,
                "idempotency_key": idempotency_key,
                "error": updated.last_error,
            },
        )
        self._notify(updated)
        return updated

    async def _write(self, op: Callable[[MutationStore], Awaitable[T]]) -> T:
        """Run a store write, falling back to memory when storage is full."""
        try:
            return await op(self._store)
        except QueueStorageError as e:
            if not self._store.is_durable:
                raise
            logger.error(f"Durable queue storage failed, keeping changes in memory: {e}")
            existing = await self._store.list_all()
            self._store = InMemoryMutationStore(seed=existing)
            self._warn_degraded(
                "storage_full",
                len(existing),
                "Device storage is full. Unsynced changes are kept in memory "
                "and will be lost if the app is closed before they sync.",
            )
            return await op(self._store)

    def _warn_degraded(self, reason: str, pending: int, message: str) -> None:
        if self._degraded_warned:
            return
        self._degraded_warned = True
        logger.warning(message, extra={"reason": reason, "pending": pending})
        event = QueueDegradedEvent(reason=reason, pending=pending, message=message)
        for listener in list(self._degraded_listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Queue degraded listener failed: {e}", exc_info=True)

    def _notify(self, mutation: PendingMutation) -> None:
        for listener in list(self._listeners):
            try:
                listener(mutation)
            except Exception as e:
                logger.error(f"Queue listener failed: {e}", exc_info=True)
