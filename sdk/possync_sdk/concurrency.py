"""
Optimistic concurrency control for PosSync SDK.

The controller applies edits to a local tentative view immediately and then
submits them to the server as version-checked writes. The server accepts a
write only when the submitted version equals the stored one; otherwise the
edit is reported as a conflict carrying the server's current state.

Outcomes are tagged results (UpdateResult), never exceptions:
    ACCEPTED    server applied the write, version is base_version + 1
    CONFLICTED  version mismatch; server_state holds the current record
    MISSING     entity does not exist (distinct from a conflict)
    TRANSIENT   network failure, timeout, 5xx or circuit open
    REJECTED    permanent 4xx (validation)

Invariants:
    - The local copy never increments its version
    - A conflict never rolls the local optimistic copy back
    - A location-scoped 404 is checked against the unscoped record before
      the outcome is reported as MISSING
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ._http_client import HttpTransport
from .errors import ApiError, ConflictError, NotFoundError, TransientError
from .models import VersionedEntity, new_idempotency_key
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

Mutator = Callable[[Dict[str, Any]], Dict[str, Any]]
EntityListener = Callable[[VersionedEntity], None]


class EntityCache:
    """Local tentative view of entities, with change notifications."""

    def __init__(self) -> None:
        self._entities: Dict[str, VersionedEntity] = {}
        self._listeners: List[EntityListener] = []

    def get(self, entity_id: str) -> Optional[VersionedEntity]:
        return self._entities.get(entity_id)

    def put(self, entity: VersionedEntity) -> None:
        """Store an entity and notify listeners."""
        self._entities[entity.id] = entity
        for listener in list(self._listeners):
            try:
                listener(entity)
            except Exception as e:
                logger.error(f"Entity listener failed: {e}", exc_info=True)

    def accept_server_state(
        self, entity: VersionedEntity, *, keep_local_fields: bool = False
    ) -> VersionedEntity:
        """Adopt authoritative state.

        With keep_local_fields the server version is taken but the local
        optimistic fields are kept, so queued edits stay visible.
        """
        local = self._entities.get(entity.id)
        if keep_local_fields and local is not None:
            entity = VersionedEntity(id=entity.id, version=entity.version, fields=local.copy_fields())
        self.put(entity)
        return entity

    def remove(self, entity_id: str) -> None:
        self._entities.pop(entity_id, None)

    def ids(self) -> List[str]:
        return list(self._entities)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._entities

    def __len__(self) -> int:
        return len(self._entities)

    def subscribe(self, listener: EntityListener) -> Callable[[], None]:
        """Register a listener called with every stored entity."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe


class UpdateStatus(Enum):
    """Outcome of a versioned write."""

    ACCEPTED = "accepted"
    CONFLICTED = "conflicted"
    MISSING = "missing"
    TRANSIENT = "transient"
    REJECTED = "rejected"


@dataclass
class UpdateResult:
    """Tagged result of a versioned write.

    Attributes:
        status: Outcome tag
        entity_id: Target entity
        idempotency_key: Key the write was sent with
        base_version: Version the payload was computed against
        attempted: Payload that was submitted
        entity: Server entity after an accepted write
        server_state: Server's current entity on conflict
        error: Failure message for TRANSIENT / REJECTED / MISSING
        error_code: Error code of the failure (CIRCUIT_OPEN when the request
            was suppressed locally and never sent)
        queued: True when the write was routed to the offline queue
    """

    status: UpdateStatus
    entity_id: str
    idempotency_key: str
    base_version: int
    attempted: Dict[str, Any] = field(default_factory=dict)
    entity: Optional[VersionedEntity] = None
    server_state: Optional[VersionedEntity] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    queued: bool = False

    @property
    def accepted(self) -> bool:
        return self.status == UpdateStatus.ACCEPTED

    @property
    def suppressed(self) -> bool:
        """True when the breaker refused the request before it was sent."""
        return self.error_code == "CIRCUIT_OPEN"

    @property
    def conflicted(self) -> bool:
        return self.status == UpdateStatus.CONFLICTED


@dataclass(frozen=True)
class ConflictEvent:
    """Published when a write hits a version mismatch."""

    entity_id: str
    idempotency_key: str
    base_version: int
    attempted: Dict[str, Any]
    server_state: Optional[VersionedEntity]


@dataclass(frozen=True)
class StagedUpdate:
    """An edit already applied to the local view but not yet submitted."""

    entity_id: str
    base_version: int
    payload: Dict[str, Any]
    idempotency_key: str


class OptimisticConcurrencyController:
    """Applies edits optimistically and submits them as versioned writes.

    Args:
        transport: HTTP transport
        retry_policy: Retry policy bound to the shared breaker
        cache: Local tentative view (a fresh one if omitted)
        location_id: Default location scope for writes and reads

    Example:
        >>> result = await controller.apply_update(
        ...     "p1", lambda f: {**f, "quantity": f["quantity"] - 1}
        ... )
        >>> if result.conflicted:
        ...     show_conflict(result.attempted, result.server_state)
    """

    def __init__(
        self,
        transport: HttpTransport,
        retry_policy: RetryPolicy,
        cache: Optional[EntityCache] = None,
        *,
        location_id: Optional[str] = None,
    ) -> None:
        self.transport = transport
        self.retry_policy = retry_policy
        self.cache = cache if cache is not None else EntityCache()
        self.location_id = location_id
        self._conflict_listeners: List[Callable[[ConflictEvent], None]] = []

    def subscribe_conflicts(
        self, listener: Callable[[ConflictEvent], None]
    ) -> Callable[[], None]:
        """Register a conflict listener. Returns an unsubscribe callable."""
        self._conflict_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._conflict_listeners:
                self._conflict_listeners.remove(listener)

        return unsubscribe

    async def refresh(
        self,
        entity_id: str,
        *,
        location_id: Optional[str] = None,
        keep_local_fields: bool = False,
    ) -> Optional[VersionedEntity]:
        """Pull authoritative state into the local view.

        Returns:
            The stored entity, or None if the server has no such entity

        Raises:
            TransientError: If the server could not be reached
        """
        try:
            data = await self.retry_policy.call(
                lambda: self.transport.get_product(
                    entity_id, location_id=location_id or self.location_id
                )
            )
        except NotFoundError:
            logger.debug(f"Entity {entity_id} not found on refresh")
            if not keep_local_fields:
                self.cache.remove(entity_id)
            return None
        return self.cache.accept_server_state(
            VersionedEntity.from_dict(data), keep_local_fields=keep_local_fields
        )

    async def stage_update(
        self,
        entity_id: str,
        mutator: Mutator,
        *,
        idempotency_key: Optional[str] = None,
    ) -> StagedUpdate:
        """Apply `mutator` to the local view and publish the result.

        The entity is fetched first if it is not cached yet.

        Raises:
            TransientError: If the entity is not cached and cannot be fetched
            NotFoundError: If the entity does not exist
        """
        base = self.cache.get(entity_id)
        if base is None:
            base = await self.refresh(entity_id)
            if base is None:
                raise NotFoundError(f"Entity {entity_id} not found", resource_id=entity_id)

        new_fields = mutator(base.copy_fields())
        self.cache.put(base.with_fields(new_fields))
        return StagedUpdate(
            entity_id=entity_id,
            base_version=base.version,
            payload=new_fields,
            idempotency_key=idempotency_key or new_idempotency_key(),
        )

    async def apply_update(
        self,
        entity_id: str,
        mutator: Mutator,
        *,
        idempotency_key: Optional[str] = None,
    ) -> UpdateResult:
        """Apply an edit locally and submit it to the server."""
        key = idempotency_key or new_idempotency_key()
        try:
            staged = await self.stage_update(entity_id, mutator, idempotency_key=key)
        except NotFoundError as e:
            return UpdateResult(
                status=UpdateStatus.MISSING,
                entity_id=entity_id,
                idempotency_key=key,
                base_version=0,
                error=e.message,
            )
        except TransientError as e:
            return UpdateResult(
                status=UpdateStatus.TRANSIENT,
                entity_id=entity_id,
                idempotency_key=key,
                base_version=0,
                error=e.message,
                error_code=e.code,
            )
        return await self.submit(
            staged.entity_id,
            staged.base_version,
            staged.payload,
            staged.idempotency_key,
        )

    async def submit(
        self,
        entity_id: str,
        base_version: int,
        payload: Dict[str, Any],
        idempotency_key: str,
        *,
        location_id: Optional[str] = None,
        keep_local_fields: bool = False,
    ) -> UpdateResult:
        """Send one versioned write and classify the outcome.

        Args:
            entity_id: Target entity
            base_version: Version the payload was computed against
            payload: Fields to write (PATCH semantics)
            idempotency_key: Key reused by every retry of this write
            location_id: Location scope (defaults to the controller's)
            keep_local_fields: Keep optimistic fields after acceptance
                because more local edits are still queued
        """
        scope = location_id if location_id is not None else self.location_id

        def result(status: UpdateStatus, **kwargs: Any) -> UpdateResult:
            return UpdateResult(
                status=status,
                entity_id=entity_id,
                idempotency_key=idempotency_key,
                base_version=base_version,
                attempted=payload,
                **kwargs,
            )

        try:
            data = await self.retry_policy.call(
                lambda: self.transport.update_product(
                    entity_id,
                    base_version,
                    payload,
                    idempotency_key=idempotency_key,
                    location_id=scope,
                )
            )
        except ConflictError as e:
            server_state = VersionedEntity.from_dict(e.current) if e.current else None
            return self._conflict(result, server_state)
        except NotFoundError as e:
            if scope:
                return await self._scoped_fallback(
                    entity_id, base_version, payload, idempotency_key, keep_local_fields, result
                )
            logger.info(f"Entity {entity_id} missing on update")
            return result(UpdateStatus.MISSING, error=e.message)
        except ApiError as e:
            logger.warning(
                f"Update rejected: {e.message}",
                extra={"entity_id": entity_id, "status": e.status},
            )
            return result(UpdateStatus.REJECTED, error=e.message)
        except TransientError as e:
            return result(UpdateStatus.TRANSIENT, error=e.message, error_code=e.code)

        entity = VersionedEntity.from_dict(data)
        if entity.version != base_version + 1:
            logger.warning(
                "Server version did not advance by one",
                extra={
                    "entity_id": entity_id,
                    "base_version": base_version,
                    "server_version": entity.version,
                },
            )
        self.cache.accept_server_state(entity, keep_local_fields=keep_local_fields)
        logger.debug(
            f"Update accepted for {entity_id}",
            extra={"entity_id": entity_id, "version": entity.version},
        )
        return result(UpdateStatus.ACCEPTED, entity=entity)

    async def _scoped_fallback(
        self,
        entity_id: str,
        base_version: int,
        payload: Dict[str, Any],
        idempotency_key: str,
        keep_local_fields: bool,
        result: Callable[..., UpdateResult],
    ) -> UpdateResult:
        """Resolve a location-scoped 404 with a by-identity lookup."""
        try:
            data = await self.retry_policy.call(
                lambda: self.transport.get_product(entity_id)
            )
        except NotFoundError as e:
            return result(UpdateStatus.MISSING, error=e.message)
        except ApiError as e:
            return result(UpdateStatus.REJECTED, error=e.message)
        except TransientError as e:
            return result(UpdateStatus.TRANSIENT, error=e.message, error_code=e.code)

        current = VersionedEntity.from_dict(data)
        if current.version != base_version:
            return self._conflict(result, current)

        logger.info(
            "Scoped update missed, resubmitting by identity",
            extra={"entity_id": entity_id, "base_version": base_version},
        )
        return await self.submit(
            entity_id,
            base_version,
            payload,
            idempotency_key,
            location_id="",
            keep_local_fields=keep_local_fields,
        )

    def _conflict(
        self,
        result: Callable[..., UpdateResult],
        server_state: Optional[VersionedEntity],
    ) -> UpdateResult:
        outcome: UpdateResult = result(UpdateStatus.CONFLICTED, server_state=server_state)
        logger.info(
            f"Version conflict on {outcome.entity_id}",
            extra={
                "entity_id": outcome.entity_id,
                "base_version": outcome.base_version,
                "server_version": server_state.version if server_state else None,
            },
        )
        event = ConflictEvent(
            entity_id=outcome.entity_id,
            idempotency_key=outcome.idempotency_key,
            base_version=outcome.base_version,
            attempted=outcome.attempted,
            server_state=server_state,
        )
        for listener in list(self._conflict_listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Conflict listener failed: {e}", exc_info=True)
        return outcome

    def resolve_keep_server(self, server_state: VersionedEntity) -> VersionedEntity:
        """Discard local edits for an entity and adopt the server's record."""
        return self.cache.accept_server_state(server_state)

    async def resolve_retry(
        self,
        conflict: UpdateResult,
        payload: Optional[Dict[str, Any]] = None,
    ) -> UpdateResult:
        """Resubmit a conflicted write on top of the server's current version.

        Args:
            conflict: A CONFLICTED result carrying the server state
            payload: Replacement fields (defaults to the attempted payload)

        Raises:
            ValueError: If the result is not a conflict with server state
        """
        if not conflict.conflicted or conflict.server_state is None:
            raise ValueError("Only a conflict with known server state can be retried")
        return await self.submit(
            conflict.entity_id,
            conflict.server_state.version,
            payload if payload is not None else conflict.attempted,
            conflict.idempotency_key,
        )
