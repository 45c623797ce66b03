"""
In-memory mutation store.

Used by unit tests and as the degraded fallback when durable storage is
full. Everything is lost on process exit.

Invariants:
    - Same ordering guarantees as the SQLite backend
    - Stored mutations are immutable snapshots, so callers cannot alter them
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from ..errors import QueueError
from ..models import PendingMutation

logger = logging.getLogger(__name__)


class InMemoryMutationStore:
    """In-memory implementation of MutationStore.

    Example:
        >>> store = InMemoryMutationStore()
        >>> await store.open()
        >>> await store.insert(mutation)
    """

    def __init__(self, seed: Optional[Iterable[PendingMutation]] = None) -> None:
        """Initialize the store.

        Args:
            seed: Mutations to start with, keeping their sequences
        """
        self._rows: Dict[str, PendingMutation] = {}
        self._next_sequence = 1
        for mutation in seed or ():
            self._rows[mutation.idempotency_key] = mutation
            self._next_sequence = max(self._next_sequence, mutation.sequence + 1)

    @property
    def is_durable(self) -> bool:
        return False

    async def open(self) -> None:
        logger.debug("InMemoryMutationStore opened", extra={"rows": len(self._rows)})

    async def close(self) -> None:
        logger.debug("InMemoryMutationStore closed")

    async def insert(self, mutation: PendingMutation) -> PendingMutation:
        if mutation.idempotency_key in self._rows:
            raise QueueError("Duplicate idempotency key", mutation.idempotency_key)
        stored = mutation.transition(sequence=self._next_sequence)
        self._next_sequence += 1
        self._rows[stored.idempotency_key] = stored
        return stored

    async def update(self, mutation: PendingMutation) -> None:
        if mutation.idempotency_key not in self._rows:
            raise QueueError("Unknown mutation", mutation.idempotency_key)
        self._rows[mutation.idempotency_key] = mutation

    async def delete(self, idempotency_key: str) -> None:
        self._rows.pop(idempotency_key, None)

    async def get(self, idempotency_key: str) -> Optional[PendingMutation]:
        return self._rows.get(idempotency_key)

    async def list_all(self) -> List[PendingMutation]:
        return sorted(self._rows.values(), key=lambda m: m.sequence)

    async def list_for_entity(self, entity_id: str) -> List[PendingMutation]:
        return [m for m in await self.list_all() if m.entity_id == entity_id]

    def __len__(self) -> int:
        return len(self._rows)
