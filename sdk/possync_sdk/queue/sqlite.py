"""
SQLite-backed durable mutation store.

One SQLite file per device holds one row per PendingMutation. Rows survive
process restarts; the queue reverts rows left in_flight by a crash when it
opens.

Invariants:
    - sequence is an AUTOINCREMENT key, never reused after deletion
    - idempotency_key is unique
    - Every write runs in its own BEGIN IMMEDIATE transaction

How to change safely:
    - Schema changes must keep existing queue files readable
    - Use transactions for all write operations

Table schema:
    pending_mutations:
        - sequence INTEGER PRIMARY KEY AUTOINCREMENT
        - idempotency_key TEXT UNIQUE
        - entity_id TEXT
        - base_version INTEGER
        - payload_json TEXT
        - created_at INTEGER (Unix ms)
        - attempt_count INTEGER
        - status TEXT
        - last_error TEXT
        - server_state_json TEXT
        - location_id TEXT
        - INDEX on (entity_id, sequence)
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..errors import QueueError, QueueStorageError
from ..models import MutationStatus, PendingMutation

logger = logging.getLogger(__name__)

_COLUMNS = (
    "sequence, idempotency_key, entity_id, base_version, payload_json, created_at, "
    "attempt_count, status, last_error, server_state_json, location_id"
)


class SqliteMutationStore:
    """Durable MutationStore on a local SQLite file.

    Thread safety:
        Each operation opens its own connection. SQLite serializes writers.

    Example:
        >>> store = SqliteMutationStore("/var/lib/possync/queue.db")
        >>> await store.open()
        >>> await store.insert(mutation)
    """

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: Path of the SQLite file (created on open)
            wal_mode: Enable SQLite WAL journal mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms

    @property
    def is_durable(self) -> bool:
        return True

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Open a connection inside BEGIN IMMEDIATE, mapping storage errors."""
        try:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
        except sqlite3.IntegrityError as e:
            raise QueueError(f"Queue constraint violated: {e}") from e
        except sqlite3.OperationalError as e:
            if "full" in str(e).lower():
                raise QueueStorageError(f"Queue storage is full: {e}") from e
            raise

    async def open(self) -> None:
        """Create the schema if needed."""
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pending_mutations (
                    sequence INTEGER PRIMARY KEY AUTOINCREMENT,
                    idempotency_key TEXT NOT NULL UNIQUE,
                    entity_id TEXT NOT NULL,
                    base_version INTEGER NOT NULL,
                    payload_json TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    last_error TEXT,
                    server_state_json TEXT,
                    location_id TEXT
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_pending_entity "
                "ON pending_mutations(entity_id, sequence)"
            )
        logger.info("Opened mutation store", extra={"db_path": str(self.db_path)})

    async def close(self) -> None:
        logger.debug("SqliteMutationStore closed", extra={"db_path": str(self.db_path)})

    async def insert(self, mutation: PendingMutation) -> PendingMutation:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO pending_mutations (
                    idempotency_key, entity_id, base_version, payload_json, created_at,
                    attempt_count, status, last_error, server_state_json, location_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    mutation.idempotency_key,
                    mutation.entity_id,
                    mutation.base_version,
                    json.dumps(mutation.payload),
                    mutation.created_at,
                    mutation.attempt_count,
                    mutation.status.value,
                    mutation.last_error,
                    _dumps_optional(mutation.server_state),
                    mutation.location_id,
                ),
            )
            sequence = cursor.lastrowid
        return mutation.transition(sequence=sequence)

    async def update(self, mutation: PendingMutation) -> None:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE pending_mutations
                SET base_version = ?, payload_json = ?, attempt_count = ?, status = ?,
                    last_error = ?, server_state_json = ?, location_id = ?
                WHERE idempotency_key = ?
                """,
                (
                    mutation.base_version,
                    json.dumps(mutation.payload),
                    mutation.attempt_count,
                    mutation.status.value,
                    mutation.last_error,
                    _dumps_optional(mutation.server_state),
                    mutation.location_id,
                    mutation.idempotency_key,
                ),
            )
            if cursor.rowcount == 0:
                raise QueueError("Unknown mutation", mutation.idempotency_key)

    async def delete(self, idempotency_key: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM pending_mutations WHERE idempotency_key = ?",
                (idempotency_key,),
            )

    async def get(self, idempotency_key: str) -> PendingMutation | None:
        with self._get_connection() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM pending_mutations WHERE idempotency_key = ?",
                (idempotency_key,),
            ).fetchone()
        return _row_to_mutation(row) if row else None

    async def list_all(self) -> list[PendingMutation]:
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM pending_mutations ORDER BY sequence"
            ).fetchall()
        return [_row_to_mutation(row) for row in rows]

    async def list_for_entity(self, entity_id: str) -> list[PendingMutation]:
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM pending_mutations "
                "WHERE entity_id = ? ORDER BY sequence",
                (entity_id,),
            ).fetchall()
        return [_row_to_mutation(row) for row in rows]


def _dumps_optional(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


def _row_to_mutation(row: sqlite3.Row) -> PendingMutation:
    return PendingMutation(
        idempotency_key=row["idempotency_key"],
        entity_id=row["entity_id"],
        base_version=row["base_version"],
        payload=json.loads(row["payload_json"]),
        created_at=row["created_at"],
        attempt_count=row["attempt_count"],
        status=MutationStatus(row["status"]),
        sequence=row["sequence"],
        last_error=row["last_error"],
        server_state=json.loads(row["server_state_json"]) if row["server_state_json"] else None,
        location_id=row["location_id"],
    )
