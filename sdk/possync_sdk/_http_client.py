"""
Internal HTTP client for PosSync SDK.

This module provides the low-level HTTP communication layer on top of
httpx. It maps every response onto the SDK error taxonomy and knows the
wire shapes of the inventory API. It is internal to the SDK and should not
be used directly by users.

Users should use InventoryClient instead, which adds the circuit breaker,
retry policy, offline queue and reconciliation on top.

Error mapping:
    2xx                          -> decoded JSON body
    409 code=INSUFFICIENT_STOCK  -> InsufficientStockError
    409 (anything else)          -> ConflictError
    404                          -> NotFoundError
    408, 429, 5xx                -> TransientError
    other 4xx                    -> ValidationError
    timeout / connection error   -> TransientError
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .errors import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    TransientError,
    ValidationError,
)

logger = logging.getLogger(__name__)

TRANSIENT_STATUSES = frozenset({408, 429})
IDEMPOTENCY_HEADER = "Idempotency-Key"


class HttpTransport:
    """Async HTTP client for the inventory API.

    Args:
        base_url: Server base URL (e.g. "http://localhost:8000")
        timeout: Default per-request timeout in seconds
        transport: Optional httpx transport (ASGITransport in tests)
        headers: Extra headers sent with every request
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._headers = dict(headers or {})
        self._client: httpx.AsyncClient | None = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Open the underlying connection pool."""
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout),
            transport=self._transport,
            headers=self._headers,
        )
        logger.debug(f"HTTP transport ready for {self.base_url}")

    async def close(self) -> None:
        """Close the connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("HTTP transport closed")

    async def __aenter__(self) -> HttpTransport:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def _ensure_connected(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Not connected. Call connect() first.")
        return self._client

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send one request and decode the response.

        Raises:
            TransientError: Network failure, timeout, 408, 429 or 5xx
            ApiError: Any other non-2xx status (see module docstring)
        """
        client = self._ensure_connected()
        headers: dict[str, str] = {}
        if idempotency_key:
            headers[IDEMPOTENCY_HEADER] = idempotency_key

        try:
            response = await client.request(
                method,
                path,
                json=json,
                params=params,
                headers=headers,
                timeout=httpx.Timeout(timeout) if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.TimeoutException as e:
            raise TransientError(
                f"{method} {path} timed out", address=self.base_url
            ) from e
        except httpx.TransportError as e:
            raise TransientError(
                f"{method} {path} failed: {e}", address=self.base_url
            ) from e

        return self._decode(method, path, response)

    def _decode(self, method: str, path: str, response: httpx.Response) -> dict[str, Any]:
        body = _json_body(response)
        status = response.status_code

        if response.is_success:
            return body

        message = str(body.get("message") or body.get("error") or body.get("detail") or response.reason_phrase)
        logger.debug(
            f"{method} {path} -> {status}",
            extra={"status": status, "code": body.get("code")},
        )

        if status >= 500 or status in TRANSIENT_STATUSES:
            raise TransientError(
                f"{method} {path} failed with {status}: {message}",
                status=status,
                address=self.base_url,
            )
        if status == 409:
            if body.get("code") == "INSUFFICIENT_STOCK":
                raise InsufficientStockError(message, body=body)
            raise ConflictError(message, body=body)
        if status == 404:
            raise NotFoundError(message, resource_id=path.rsplit("/", 1)[-1], body=body)
        raise ValidationError(message, status=status, body=body)

    async def get_product(
        self,
        product_id: str,
        *,
        location_id: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Fetch a product, optionally scoped to a location."""
        params = {"location_id": location_id} if location_id else None
        return await self.request(
            "GET", f"/api/products/{product_id}", params=params, timeout=timeout
        )

    async def update_product(
        self,
        product_id: str,
        version: int,
        fields: dict[str, Any],
        *,
        idempotency_key: str,
        location_id: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Submit a version-checked PATCH of a product's fields."""
        body: dict[str, Any] = {"version": version, "fields": fields}
        if location_id:
            body["location_id"] = location_id
        return await self.request(
            "PATCH",
            f"/api/products/{product_id}",
            json=body,
            idempotency_key=idempotency_key,
            timeout=timeout,
        )

    async def deduct(
        self,
        payload: dict[str, Any],
        *,
        idempotency_key: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Submit an atomic multi-line stock deduction."""
        return await self.request(
            "POST",
            "/api/inventory/deduct",
            json=payload,
            idempotency_key=idempotency_key,
            timeout=timeout,
        )

    async def record_sale(
        self,
        payload: dict[str, Any],
        *,
        idempotency_key: str,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Record a completed sale. Duplicate keys return the original sale."""
        return await self.request(
            "POST",
            "/api/sales",
            json=payload,
            idempotency_key=idempotency_key,
            timeout=timeout,
        )

    async def health(self, *, timeout: float | None = None) -> dict[str, Any]:
        """Probe the health endpoint."""
        return await self.request("GET", "/api/health", timeout=timeout)


def _json_body(response: httpx.Response) -> dict[str, Any]:
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {"data": data}
