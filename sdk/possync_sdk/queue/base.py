"""
Base protocol for offline mutation storage.

This module defines the MutationStore protocol that every storage backend
implements, plus the factory that picks a backend from configuration.

Invariants:
    - insert() assigns a sequence strictly greater than any assigned before
    - list_all() and list_for_entity() return mutations ordered by sequence
    - A write either fully succeeds or leaves the stored rows unchanged
    - QueueStorageError is raised only when storage is full or unwritable

How to change safely:
    - Protocol changes require updating all implementations
    - Keep ordering by sequence; per-entity FIFO depends on it
"""

from __future__ import annotations

from abc import abstractmethod
from typing import List, Optional, Protocol, runtime_checkable

from ..models import PendingMutation


@runtime_checkable
class MutationStore(Protocol):
    """Protocol for offline mutation storage backends.

    Durability contract:
        - For SqliteMutationStore, a write returns only after the
          transaction committed
        - InMemoryMutationStore loses everything on process exit

    Example:
        >>> store = SqliteMutationStore("/var/lib/possync/queue.db")
        >>> await store.open()
        >>> stored = await store.insert(mutation)
        >>> stored.sequence
        1
    """

    @abstractmethod
    async def open(self) -> None:
        """Prepare the backend (create schema, files)."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release resources."""
        ...

    @abstractmethod
    async def insert(self, mutation: PendingMutation) -> PendingMutation:
        """Persist a new mutation and return it with its sequence assigned.

        Raises:
            QueueError: If the idempotency key is already stored
            QueueStorageError: If storage is full
        """
        ...

    @abstractmethod
    async def update(self, mutation: PendingMutation) -> None:
        """Overwrite the stored row for mutation.idempotency_key."""
        ...

    @abstractmethod
    async def delete(self, idempotency_key: str) -> None:
        """Remove a mutation. Unknown keys are ignored."""
        ...

    @abstractmethod
    async def get(self, idempotency_key: str) -> Optional[PendingMutation]:
        """Fetch one mutation by key."""
        ...

    @abstractmethod
    async def list_all(self) -> List[PendingMutation]:
        """All stored mutations ordered by sequence."""
        ...

    @abstractmethod
    async def list_for_entity(self, entity_id: str) -> List[PendingMutation]:
        """Stored mutations for one entity ordered by sequence."""
        ...

    @property
    @abstractmethod
    def is_durable(self) -> bool:
        """Whether stored mutations survive a process restart."""
        ...


MEMORY_PATH = ":memory:"


def create_mutation_store(db_path: Optional[str]) -> MutationStore:
    """Create a store: SQLite for a file path, memory for None or ":memory:"."""
    from .memory import InMemoryMutationStore
    from .sqlite import SqliteMutationStore

    if db_path and db_path != MEMORY_PATH:
        return SqliteMutationStore(db_path)
    return InMemoryMutationStore()
