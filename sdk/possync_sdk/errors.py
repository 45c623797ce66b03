"""
Error types for PosSync SDK.

This module defines all exception types raised inside the SDK:
- PosSyncError: Base exception
- TransientError: Network failure, timeout or 5xx (retried, counted by the breaker)
- CircuitOpenError: Request suppressed locally because the breaker is open
- ApiError: Server understood the request and refused it (4xx)
- ConflictError / NotFoundError / InsufficientStockError / ValidationError
- QueueError / QueueStorageError: Durable queue failures

Exceptions stay below the controller, queue, deduction client and reconciler.
Those layers convert them into tagged results so callers never have to catch
a conflict.

Invariants:
    - All errors inherit from PosSyncError
    - Errors include context for debugging
    - ApiError always carries the HTTP status and decoded body
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class PosSyncError(Exception):
    """Base exception for all PosSync SDK errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "POSSYNC_ERROR"
        self.details = details or {}


class TransientError(PosSyncError):
    """The request may succeed if tried again later.

    Raised when:
    - Server is unreachable
    - Request times out (including caller-supplied timeouts)
    - Server answers 5xx, 408 or 429
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        address: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="TRANSIENT_ERROR",
            details={"status": status, "address": address},
        )
        self.status = status
        self.address = address


class CircuitOpenError(TransientError):
    """Request suppressed locally while the circuit breaker is open.

    This is not a new failure and is never counted by the breaker.
    """

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(
            message
            or "Server is temporarily unavailable. Using last saved data. "
            "Please try again in a moment."
        )
        self.code = "CIRCUIT_OPEN"


class ApiError(PosSyncError):
    """The server understood the request and rejected it (4xx).

    Attributes:
        status: HTTP status code
        body: Decoded JSON body (empty dict when not JSON)
    """

    def __init__(
        self,
        message: str,
        status: int,
        body: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None,
    ) -> None:
        body = body or {}
        super().__init__(
            message,
            code=code or str(body.get("code") or "API_ERROR"),
            details={"status": status, "body": body},
        )
        self.status = status
        self.body = body


class ConflictError(ApiError):
    """Version mismatch on a versioned resource (409 STALE_VERSION).

    Attributes:
        current: Server's current entity, when the server included it
    """

    def __init__(
        self,
        message: str,
        body: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, status=409, body=body, code="STALE_VERSION")
        self.current: Optional[Dict[str, Any]] = (body or {}).get("current")


class NotFoundError(ApiError):
    """Resource not found (404).

    Raised when:
    - Product doesn't exist
    - Product exists but not in the requested location scope
    """

    def __init__(
        self,
        message: str,
        resource_id: Optional[str] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, status=404, body=body, code="NOT_FOUND")
        self.resource_id = resource_id
        self.details["resource_id"] = resource_id


class InsufficientStockError(ApiError):
    """A deduction line could not be satisfied (409 INSUFFICIENT_STOCK).

    Attributes:
        lines: Per-line detail for every line that failed
    """

    def __init__(
        self,
        message: str,
        body: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, status=409, body=body, code="INSUFFICIENT_STOCK")
        self.lines: List[Dict[str, Any]] = list((body or {}).get("lines") or [])


class ValidationError(ApiError):
    """Request rejected as malformed or invalid (400 and other 4xx).

    Also raised locally, with status 400, when input fails validation
    before any request is sent.
    """

    def __init__(
        self,
        message: str,
        status: int = 400,
        body: Optional[Dict[str, Any]] = None,
        errors: Optional[List[str]] = None,
    ) -> None:
        super().__init__(message, status=status, body=body, code="VALIDATION_ERROR")
        self.errors = errors or []
        self.details["errors"] = self.errors


class QueueError(PosSyncError):
    """Durable queue operation failed.

    Raised when:
    - A mutation key is unknown
    - A transition is not allowed from the mutation's current status
    """

    def __init__(
        self,
        message: str,
        idempotency_key: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="QUEUE_ERROR",
            details={"idempotency_key": idempotency_key},
        )
        self.idempotency_key = idempotency_key


class QueueStorageError(QueueError):
    """Durable storage is full or unwritable."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.code = "QUEUE_STORAGE_FULL"
