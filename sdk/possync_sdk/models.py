"""
Data model for PosSync SDK.

This module provides the records shared by every component:
- VersionedEntity: Server-owned record subject to concurrent edits
- PendingMutation: Queued, not-yet-confirmed change
- MutationStatus: Lifecycle of a PendingMutation
- StockLine / DeductionRequest: Line items for atomic stock deduction

Invariants:
    - The server is the sole source of truth for VersionedEntity.version
    - The client never increments a version locally
    - An idempotency key is generated once per logical operation and reused
      for every retry of it
    - StockLine.quantity is always a positive integer

Example:
    >>> entity = VersionedEntity.from_dict({"id": "p1", "version": 5, "quantity": 3})
    >>> entity.version
    5
    >>> line = StockLine("p1", quantity=2, variant_code="M")
"""

from __future__ import annotations

import copy
import time
import uuid
from dataclasses import dataclass, replace
from dataclasses import field as dataclass_field
from enum import Enum
from typing import Any


def new_idempotency_key() -> str:
    """Generate a globally unique idempotency key."""
    return str(uuid.uuid4())


def now_ms() -> int:
    """Current wall-clock time in Unix milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class VersionedEntity:
    """A server-owned record guarded by an optimistic concurrency version.

    Attributes:
        id: Opaque identifier (immutable)
        version: Server-assigned version, incremented once per accepted write
        fields: Domain fields (name, sku, price, quantity, variants, ...)
    """

    id: str
    version: int
    fields: dict[str, Any] = dataclass_field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Entity id cannot be empty")
        if self.version < 0:
            raise ValueError(f"version must be >= 0, got {self.version}")

    def with_fields(self, fields: dict[str, Any]) -> VersionedEntity:
        """Return a copy carrying new fields and the same version."""
        return replace(self, fields=copy.deepcopy(fields))

    def copy_fields(self) -> dict[str, Any]:
        """Deep copy of the fields, safe to hand to a mutator."""
        return copy.deepcopy(self.fields)

    def to_dict(self) -> dict[str, Any]:
        """Convert to wire format: {"id", "version", **fields}."""
        result = copy.deepcopy(self.fields)
        result["id"] = self.id
        result["version"] = self.version
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VersionedEntity:
        """Create from wire format.

        Raises:
            ValueError: If id or version is missing
        """
        if "id" not in data or "version" not in data:
            raise ValueError(f"Entity payload requires id and version: {sorted(data)}")
        fields = {k: copy.deepcopy(v) for k, v in data.items() if k not in ("id", "version")}
        return cls(id=str(data["id"]), version=int(data["version"]), fields=fields)


class MutationStatus(Enum):
    """Lifecycle of a queued mutation."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    ACKNOWLEDGED = "acknowledged"
    CONFLICTED = "conflicted"
    FAILED_PERMANENT = "failed_permanent"

    @property
    def blocks_entity(self) -> bool:
        """Whether a mutation in this status holds back later ones for its entity."""
        return self in (MutationStatus.CONFLICTED, MutationStatus.FAILED_PERMANENT)


@dataclass(frozen=True)
class PendingMutation:
    """A queued change waiting for server confirmation.

    Instances are immutable snapshots; the queue produces a new one for
    every state transition.

    Attributes:
        idempotency_key: Client-generated key, stable across retries
        entity_id: Target entity
        base_version: Version the payload was computed against
        payload: Resulting fields (merged server-side with PATCH semantics)
        created_at: Enqueue time (Unix ms)
        attempt_count: Failed transient attempts so far
        status: Lifecycle status
        sequence: Monotonic enqueue order, used for per-entity FIFO
        last_error: Last failure message, if any
        server_state: Server's entity when the mutation conflicted
        location_id: Optional location scope for the update
    """

    idempotency_key: str
    entity_id: str
    base_version: int
    payload: dict[str, Any]
    created_at: int
    attempt_count: int = 0
    status: MutationStatus = MutationStatus.PENDING
    sequence: int = 0
    last_error: str | None = None
    server_state: dict[str, Any] | None = None
    location_id: str | None = None

    def transition(self, **changes: Any) -> PendingMutation:
        """Return a copy with the given attributes changed."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "idempotency_key": self.idempotency_key,
            "entity_id": self.entity_id,
            "base_version": self.base_version,
            "payload": copy.deepcopy(self.payload),
            "created_at": self.created_at,
            "attempt_count": self.attempt_count,
            "status": self.status.value,
            "sequence": self.sequence,
            "last_error": self.last_error,
            "server_state": copy.deepcopy(self.server_state),
            "location_id": self.location_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingMutation:
        """Create from dictionary."""
        return cls(
            idempotency_key=data["idempotency_key"],
            entity_id=data["entity_id"],
            base_version=int(data["base_version"]),
            payload=copy.deepcopy(data.get("payload") or {}),
            created_at=int(data["created_at"]),
            attempt_count=int(data.get("attempt_count", 0)),
            status=MutationStatus(data.get("status", MutationStatus.PENDING.value)),
            sequence=int(data.get("sequence", 0)),
            last_error=data.get("last_error"),
            server_state=copy.deepcopy(data.get("server_state")),
            location_id=data.get("location_id"),
        )


@dataclass(frozen=True)
class StockLine:
    """An immutable line item submitted for deduction.

    Attributes:
        product_id: Product to deduct from
        quantity: Units to deduct (positive integer)
        variant_code: Optional variant (e.g. a size code)
    """

    product_id: str
    quantity: int
    variant_code: str | None = None

    def __post_init__(self) -> None:
        if not self.product_id:
            raise ValueError("product_id cannot be empty")
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise ValueError(f"quantity must be an integer, got {self.quantity!r}")
        if self.quantity <= 0:
            raise ValueError(f"quantity must be positive, got {self.quantity}")

    def to_dict(self) -> dict[str, Any]:
        """Convert to wire format."""
        result: dict[str, Any] = {"productId": self.product_id, "quantity": self.quantity}
        if self.variant_code:
            result["variantCode"] = self.variant_code
        return result


@dataclass(frozen=True)
class DeductionRequest:
    """A non-empty ordered batch of StockLines deducted as one unit.

    Attributes:
        location_id: Location whose stock is deducted
        lines: Line items, in order
        idempotency_key: Key that makes a retried submission safe
    """

    location_id: str
    lines: tuple[StockLine, ...]
    idempotency_key: str = dataclass_field(default_factory=new_idempotency_key)

    def __post_init__(self) -> None:
        if not self.location_id:
            raise ValueError("location_id cannot be empty")
        if not self.lines:
            raise ValueError("A deduction request needs at least one line")

    @property
    def product_ids(self) -> list[str]:
        """Distinct product ids, in first-seen order."""
        return list(dict.fromkeys(line.product_id for line in self.lines))

    def to_dict(self) -> dict[str, Any]:
        """Convert to wire format."""
        return {
            "locationId": self.location_id,
            "items": [line.to_dict() for line in self.lines],
        }
