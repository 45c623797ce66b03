"""
Offline mutation queue for PosSync SDK.

This package provides the durable per-device log of unconfirmed writes:
- OfflineMutationQueue: ordering, lifecycle and quota handling
- SqliteMutationStore: durable SQLite backend (survives restart)
- InMemoryMutationStore: tests and degraded fallback

Invariants:
    - Mutations are delivered in enqueue order per entity
    - A mutation is removed only after the server acknowledged it
      or the user discarded it
"""

from .base import MEMORY_PATH, MutationStore, create_mutation_store
from .memory import InMemoryMutationStore
from .queue import ConflictStrategy, OfflineMutationQueue, QueueDegradedEvent
from .sqlite import SqliteMutationStore

__all__ = [
    # Queue
    "OfflineMutationQueue",
    "ConflictStrategy",
    "QueueDegradedEvent",
    # Storage
    "MutationStore",
    "create_mutation_store",
    "MEMORY_PATH",
    "SqliteMutationStore",
    "InMemoryMutationStore",
]
