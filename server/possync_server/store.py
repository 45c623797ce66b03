"""
SQLite inventory store for the PosSync reference server.

This module manages the single SQLite database that stores:
- Products with their version, location and fields
- Recorded sales
- Applied requests for Idempotency-Key replay

Invariants:
    - A product write is accepted only when the submitted version equals
      the stored one; acceptance stores version + 1
    - A deduction decrements every line or none (single transaction)
    - A successful response is recorded in the same transaction as the
      write it describes, so a replayed key never applies twice
    - Only successful responses are recorded; failures are not replayed

How to change safely:
    - Use BEGIN IMMEDIATE for every read-modify-write
    - Schema migrations must be backward compatible

Table schema:
    products:
        - id TEXT PRIMARY KEY
        - location_id TEXT
        - version INTEGER
        - fields_json TEXT
        - updated_at INTEGER (Unix ms)

    sales:
        - id TEXT PRIMARY KEY
        - idempotency_key TEXT UNIQUE
        - location_id TEXT
        - items_json TEXT
        - extra_json TEXT
        - created_at INTEGER (Unix ms)

    applied_requests:
        - idempotency_key TEXT
        - endpoint TEXT
        - status_code INTEGER
        - response_json TEXT
        - created_at INTEGER (Unix ms)
        - PRIMARY KEY (idempotency_key, endpoint)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

RESERVED_FIELDS = frozenset({"id", "version", "location_id"})


class ProductNotFoundError(Exception):
    """Product does not exist (in the requested location)."""

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Product not found: {product_id}")
        self.product_id = product_id


class StaleVersionError(Exception):
    """Submitted version does not match the stored version."""

    def __init__(self, current: dict[str, Any]) -> None:
        super().__init__(f"Stale version for product {current['id']}")
        self.current = current


class InsufficientStockError(Exception):
    """At least one deduction line exceeds the stock on hand."""

    def __init__(self, lines: list[dict[str, Any]]) -> None:
        super().__init__(f"Insufficient stock for {len(lines)} line(s)")
        self.lines = lines


@dataclass(frozen=True)
class DeductLine:
    """One line of a deduction."""

    product_id: str
    quantity: int
    variant_code: str | None = None


@dataclass
class Replay:
    """A stored response returned for a repeated Idempotency-Key."""

    status_code: int
    body: dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


class StockStore:
    """SQLite store for products, sales and idempotent replay.

    Thread safety:
        Each operation opens its own connection.
        SQLite serializes writers via BEGIN IMMEDIATE.

    Example:
        >>> store = StockStore("/var/lib/possync/server.db")
        >>> store.initialize()
        >>> await store.create_product({"name": "Tee", "quantity": 5}, location_id="store-1")
    """

    def __init__(
        self,
        db_path: str,
        busy_timeout_ms: int = 5000,
        idempotency_ttl_seconds: int = 300,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: SQLite database file
            busy_timeout_ms: SQLite busy timeout
            idempotency_ttl_seconds: How long successful responses are replayed
        """
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self.idempotency_ttl_ms = idempotency_ttl_seconds * 1000

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def initialize(self) -> None:
        """Create the schema if needed."""
        with self._get_connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS products (
                    id TEXT PRIMARY KEY,
                    location_id TEXT,
                    version INTEGER NOT NULL,
                    fields_json TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_products_location
                    ON products(location_id);

                CREATE TABLE IF NOT EXISTS sales (
                    id TEXT PRIMARY KEY,
                    idempotency_key TEXT NOT NULL UNIQUE,
                    location_id TEXT NOT NULL,
                    items_json TEXT NOT NULL,
                    extra_json TEXT NOT NULL,
                    created_at INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS applied_requests (
                    idempotency_key TEXT NOT NULL,
                    endpoint TEXT NOT NULL,
                    status_code INTEGER NOT NULL,
                    response_json TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    PRIMARY KEY (idempotency_key, endpoint)
                );
            """)
        logger.info("Initialized stock store", extra={"db_path": str(self.db_path)})

    # --- Idempotency ---

    def _replay(
        self, conn: sqlite3.Connection, idempotency_key: str | None, endpoint: str
    ) -> Replay | None:
        if not idempotency_key:
            return None
        row = conn.execute(
            "SELECT status_code, response_json, created_at FROM applied_requests "
            "WHERE idempotency_key = ? AND endpoint = ?",
            (idempotency_key, endpoint),
        ).fetchone()
        if row is None:
            return None
        if _now_ms() - row["created_at"] > self.idempotency_ttl_ms:
            conn.execute(
                "DELETE FROM applied_requests WHERE idempotency_key = ? AND endpoint = ?",
                (idempotency_key, endpoint),
            )
            return None
        logger.debug(
            "Replaying stored response",
            extra={"idempotency_key": idempotency_key, "endpoint": endpoint},
        )
        return Replay(status_code=row["status_code"], body=json.loads(row["response_json"]))

    def _remember(
        self,
        conn: sqlite3.Connection,
        idempotency_key: str | None,
        endpoint: str,
        status_code: int,
        body: dict[str, Any],
    ) -> None:
        if not idempotency_key:
            return
        conn.execute(
            """
            INSERT OR REPLACE INTO applied_requests
                (idempotency_key, endpoint, status_code, response_json, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (idempotency_key, endpoint, status_code, json.dumps(body), _now_ms()),
        )

    async def purge_expired_requests(self) -> int:
        """Delete stored responses older than the replay window."""
        cutoff = _now_ms() - self.idempotency_ttl_ms
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM applied_requests WHERE created_at < ?", (cutoff,)
            )
            return cursor.rowcount

    # --- Products ---

    @staticmethod
    def _row_to_product(row: sqlite3.Row) -> dict[str, Any]:
        product = json.loads(row["fields_json"])
        product["id"] = row["id"]
        product["version"] = row["version"]
        product["location_id"] = row["location_id"]
        return product

    def _load(
        self, conn: sqlite3.Connection, product_id: str, location_id: str | None = None
    ) -> sqlite3.Row | None:
        if location_id:
            return conn.execute(
                "SELECT * FROM products WHERE id = ? AND location_id = ?",
                (product_id, location_id),
            ).fetchone()
        return conn.execute("SELECT * FROM products WHERE id = ?", (product_id,)).fetchone()

    async def create_product(
        self,
        fields: dict[str, Any],
        *,
        product_id: str | None = None,
        location_id: str | None = None,
        version: int = 1,
    ) -> dict[str, Any]:
        """Create a product.

        Raises:
            sqlite3.IntegrityError: If the id already exists
        """
        product_id = product_id or str(uuid.uuid4())
        clean = {k: v for k, v in fields.items() if k not in RESERVED_FIELDS}
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO products (id, location_id, version, fields_json, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (product_id, location_id, version, json.dumps(clean), _now_ms()),
            )
            row = self._load(conn, product_id)
        logger.debug("Created product", extra={"product_id": product_id, "location_id": location_id})
        return self._row_to_product(row)

    async def get_product(
        self, product_id: str, location_id: str | None = None
    ) -> dict[str, Any] | None:
        """Get a product, optionally only if it belongs to a location."""
        with self._get_connection() as conn:
            row = self._load(conn, product_id, location_id)
        return self._row_to_product(row) if row else None

    async def update_product(
        self,
        product_id: str,
        version: int,
        fields: dict[str, Any],
        *,
        location_id: str | None = None,
        idempotency_key: str | None = None,
        endpoint: str = "products.update",
    ) -> dict[str, Any]:
        """Apply a version-checked PATCH of a product's fields.

        Returns:
            The updated product (or the stored response on replay)

        Raises:
            ProductNotFoundError: If the product is not in scope
            StaleVersionError: If version does not match
        """
        with self._transaction() as conn:
            replay = self._replay(conn, idempotency_key, endpoint)
            if replay is not None:
                return replay.body

            row = self._load(conn, product_id, location_id)
            if row is None:
                raise ProductNotFoundError(product_id)
            if row["version"] != version:
                raise StaleVersionError(self._row_to_product(row))

            merged = json.loads(row["fields_json"])
            merged.update({k: v for k, v in fields.items() if k not in RESERVED_FIELDS})
            conn.execute(
                """
                UPDATE products SET version = ?, fields_json = ?, updated_at = ?
                WHERE id = ? AND version = ?
                """,
                (version + 1, json.dumps(merged), _now_ms(), product_id, version),
            )
            product = self._row_to_product(self._load(conn, product_id))
            self._remember(conn, idempotency_key, endpoint, 200, product)

        logger.debug(
            "Updated product",
            extra={"product_id": product_id, "version": product["version"]},
        )
        return product

    # --- Deduction ---

    def _deduct_in(
        self,
        conn: sqlite3.Connection,
        location_id: str,
        lines: list[DeductLine],
    ) -> None:
        """Check and decrement every line inside an open transaction."""
        products: dict[str, dict[str, Any]] = {}
        failed: list[dict[str, Any]] = []

        for index, line in enumerate(lines):
            if line.product_id not in products:
                row = self._load(conn, line.product_id, location_id)
                if row is not None:
                    products[line.product_id] = json.loads(row["fields_json"])
            fields = products.get(line.product_id)

            if fields is None:
                available = 0
            elif line.variant_code:
                available = int((fields.get("variants") or {}).get(line.variant_code, 0))
            else:
                available = int(fields.get("quantity", 0))

            if fields is None or available < line.quantity:
                failed.append(
                    {
                        "index": index,
                        "productId": line.product_id,
                        "variantCode": line.variant_code,
                        "requested": line.quantity,
                        "available": available,
                    }
                )
                continue

            if line.variant_code:
                fields["variants"][line.variant_code] = available - line.quantity
                if "quantity" in fields:
                    fields["quantity"] = int(fields["quantity"]) - line.quantity
            else:
                fields["quantity"] = available - line.quantity

        if failed:
            raise InsufficientStockError(failed)

        now = _now_ms()
        for product_id, fields in products.items():
            conn.execute(
                """
                UPDATE products SET version = version + 1, fields_json = ?, updated_at = ?
                WHERE id = ?
                """,
                (json.dumps(fields), now, product_id),
            )

    async def deduct(
        self,
        location_id: str,
        lines: list[DeductLine],
        *,
        idempotency_key: str | None = None,
        endpoint: str = "inventory.deduct",
    ) -> dict[str, Any]:
        """Deduct every line atomically.

        Raises:
            InsufficientStockError: If any line cannot be satisfied
                (nothing is deducted)
        """
        with self._transaction() as conn:
            replay = self._replay(conn, idempotency_key, endpoint)
            if replay is not None:
                return replay.body
            self._deduct_in(conn, location_id, lines)
            body = {"ok": True}
            self._remember(conn, idempotency_key, endpoint, 200, body)

        logger.info(
            "Deducted stock",
            extra={"location_id": location_id, "lines": len(lines)},
        )
        return body

    # --- Sales ---

    async def record_sale(
        self,
        idempotency_key: str,
        location_id: str,
        lines: list[DeductLine],
        extra: dict[str, Any] | None = None,
        *,
        endpoint: str = "sales.create",
    ) -> dict[str, Any]:
        """Record a sale and deduct its stock in one transaction.

        A repeated idempotency key returns the original sale.

        Raises:
            InsufficientStockError: If any line cannot be satisfied
        """
        with self._transaction() as conn:
            replay = self._replay(conn, idempotency_key, endpoint)
            if replay is not None:
                return replay.body

            existing = conn.execute(
                "SELECT * FROM sales WHERE idempotency_key = ?", (idempotency_key,)
            ).fetchone()
            if existing is not None:
                return {"sale": self._row_to_sale(existing)}

            self._deduct_in(conn, location_id, lines)
            sale_id = str(uuid.uuid4())
            items = [
                {"productId": line.product_id, "variantCode": line.variant_code, "quantity": line.quantity}
                for line in lines
            ]
            conn.execute(
                """
                INSERT INTO sales (id, idempotency_key, location_id, items_json, extra_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (sale_id, idempotency_key, location_id, json.dumps(items), json.dumps(extra or {}), _now_ms()),
            )
            row = conn.execute("SELECT * FROM sales WHERE id = ?", (sale_id,)).fetchone()
            body = {"sale": self._row_to_sale(row)}
            self._remember(conn, idempotency_key, endpoint, 201, body)

        logger.info(
            "Recorded sale",
            extra={"sale_id": sale_id, "location_id": location_id, "lines": len(lines)},
        )
        return body

    @staticmethod
    def _row_to_sale(row: sqlite3.Row) -> dict[str, Any]:
        sale = json.loads(row["extra_json"])
        sale.update(
            {
                "id": row["id"],
                "idempotencyKey": row["idempotency_key"],
                "locationId": row["location_id"],
                "items": json.loads(row["items_json"]),
                "createdAt": row["created_at"],
            }
        )
        return sale

    async def count_sales(self) -> int:
        with self._get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM sales").fetchone()[0]
