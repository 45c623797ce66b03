"""
PosSync Python SDK - Resilient inventory and point-of-sale client.

This SDK keeps a POS device selling while its inventory server is slow,
unreachable or serving stale data, and reconciles afterwards without losing
or double-applying writes:
- CircuitBreaker / RetryPolicy to stop hammering a failing backend
- OptimisticConcurrencyController for version-checked writes
- OfflineMutationQueue + SyncReconciler for offline edits
- StockDeductionClient for all-or-nothing stock deduction at checkout
- InventoryClient tying everything together

Example:
    >>> from possync_sdk import InventoryClient, StockLine, new_idempotency_key
    >>>
    >>> async with InventoryClient() as client:
    ...     await client.update("p1", lambda f: {**f, "price": 9.99})
    ...     result = await client.checkout(
    ...         "store-1",
    ...         [StockLine("p1", 2), StockLine("p2", 1, variant_code="M")],
    ...         idempotency_key=new_idempotency_key(),
    ...     )

Invariants:
    - The server alone assigns versions
    - Every retry of an operation reuses its idempotency key
    - Conflicts are surfaced, never merged automatically

Version: 1.0.0
"""

__version__ = "1.0.0"

from .circuit import CircuitBreaker, CircuitState
from .client import InventoryClient
from .concurrency import (
    ConflictEvent,
    EntityCache,
    OptimisticConcurrencyController,
    UpdateResult,
    UpdateStatus,
)
from .config import (
    ApiConfig,
    BreakerConfig,
    ClientConfig,
    ObservabilityConfig,
    QueueConfig,
    RetryConfig,
    SyncConfig,
)
from .deduction import (
    CheckoutResult,
    DeductionResult,
    DeductionStatus,
    FailedLine,
    StockDeductionClient,
)
from .errors import (
    ApiError,
    CircuitOpenError,
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    PosSyncError,
    QueueError,
    QueueStorageError,
    TransientError,
    ValidationError,
)
from .models import (
    DeductionRequest,
    MutationStatus,
    PendingMutation,
    StockLine,
    VersionedEntity,
    new_idempotency_key,
)
from .queue import (
    ConflictStrategy,
    InMemoryMutationStore,
    MutationStore,
    OfflineMutationQueue,
    QueueDegradedEvent,
    SqliteMutationStore,
)
from .reconciler import SyncReconciler, SyncSummary
from .retry import RetryPolicy

__all__ = [
    # Version
    "__version__",
    # Client
    "InventoryClient",
    "ClientConfig",
    "ApiConfig",
    "BreakerConfig",
    "RetryConfig",
    "QueueConfig",
    "SyncConfig",
    "ObservabilityConfig",
    # Resilience
    "CircuitBreaker",
    "CircuitState",
    "RetryPolicy",
    # Concurrency
    "OptimisticConcurrencyController",
    "EntityCache",
    "UpdateResult",
    "UpdateStatus",
    "ConflictEvent",
    # Queue
    "OfflineMutationQueue",
    "MutationStore",
    "SqliteMutationStore",
    "InMemoryMutationStore",
    "ConflictStrategy",
    "QueueDegradedEvent",
    # Sync
    "SyncReconciler",
    "SyncSummary",
    # Deduction
    "StockDeductionClient",
    "DeductionResult",
    "CheckoutResult",
    "DeductionStatus",
    "FailedLine",
    # Models
    "VersionedEntity",
    "PendingMutation",
    "MutationStatus",
    "StockLine",
    "DeductionRequest",
    "new_idempotency_key",
    # Errors
    "PosSyncError",
    "TransientError",
    "CircuitOpenError",
    "ApiError",
    "ConflictError",
    "NotFoundError",
    "InsufficientStockError",
    "ValidationError",
    "QueueError",
    "QueueStorageError",
]
