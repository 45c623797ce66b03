"""
Atomic stock deduction for PosSync SDK.

Checkout deducts every line of a sale in one server-side transaction:
either every line is decremented or none is. The client never decrements
its local stock before the server confirmed the deduction; on success the
touched products are scheduled for refresh instead.

Invariants:
    - One request carries every line of a deduction
    - A retried deduction reuses its idempotency key
    - An INSUFFICIENT_STOCK result is never resubmitted with the same lines
    - Local stock is never changed by this module
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from ._http_client import HttpTransport
from .errors import ApiError, InsufficientStockError, TransientError
from .models import DeductionRequest, StockLine, new_idempotency_key
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class DeductionStatus(Enum):
    """Outcome of a deduction or checkout."""

    DEDUCTED = "deducted"
    INSUFFICIENT_STOCK = "insufficient_stock"
    REJECTED = "rejected"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class FailedLine:
    """A line the server could not satisfy.

    Attributes:
        index: Position of the line in the request
        product_id: Product of the line
        variant_code: Variant of the line, if any
        requested: Quantity requested
        available: Quantity on hand at the time
    """

    index: int
    product_id: str
    variant_code: Optional[str]
    requested: int
    available: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> FailedLine:
        return cls(
            index=int(data.get("index", -1)),
            product_id=str(data.get("productId", "")),
            variant_code=data.get("variantCode"),
            requested=int(data.get("requested", 0)),
            available=int(data.get("available", 0)),
        )


@dataclass
class DeductionResult:
    """Tagged result of a deduction.

    Attributes:
        status: Outcome tag
        idempotency_key: Key to reuse when retrying an UNAVAILABLE result
        failed_lines: Lines that could not be satisfied
        error: Failure message for REJECTED / UNAVAILABLE
    """

    status: DeductionStatus
    idempotency_key: str
    failed_lines: List[FailedLine] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == DeductionStatus.DEDUCTED

    @property
    def retryable(self) -> bool:
        """Safe to resubmit unchanged with the same idempotency key."""
        return self.status == DeductionStatus.UNAVAILABLE


@dataclass
class CheckoutResult(DeductionResult):
    """Tagged result of recording a sale.

    Attributes:
        sale: Sale record returned by the server (original one on replay)
    """

    sale: Optional[Dict[str, Any]] = None


class StockDeductionClient:
    """Submits atomic multi-line deductions and idempotent sales.

    Args:
        transport: HTTP transport
        retry_policy: Retry policy bound to the shared breaker
        on_touched: Called with product ids whose stock changed server-side

    Example:
        >>> result = await deductions.deduct(
        ...     "store-1", [StockLine("p1", 2), StockLine("p2", 1, "M")]
        ... )
        >>> if result.status == DeductionStatus.INSUFFICIENT_STOCK:
        ...     show_blocking_error(result.failed_lines)
    """

    def __init__(
        self,
        transport: HttpTransport,
        retry_policy: RetryPolicy,
        *,
        on_touched: Optional[Callable[[Iterable[str]], None]] = None,
    ) -> None:
        self.transport = transport
        self.retry_policy = retry_policy
        self._on_touched = on_touched

    async def deduct(
        self,
        location_id: str,
        lines: Sequence[StockLine],
        *,
        idempotency_key: Optional[str] = None,
    ) -> DeductionResult:
        """Deduct every line atomically at a location."""
        key = idempotency_key or new_idempotency_key()
        try:
            request = DeductionRequest(location_id, tuple(lines), key)
        except ValueError as e:
            return DeductionResult(DeductionStatus.REJECTED, key, error=str(e))

        outcome = await self._send(
            request,
            lambda: self.transport.deduct(request.to_dict(), idempotency_key=key),
        )
        if isinstance(outcome, DeductionResult):
            return outcome
        return DeductionResult(DeductionStatus.DEDUCTED, key)

    async def checkout(
        self,
        location_id: str,
        lines: Sequence[StockLine],
        *,
        idempotency_key: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> CheckoutResult:
        """Record a sale and deduct its stock in one server transaction.

        Submitting the same idempotency key again returns the original sale.

        Args:
            location_id: Location of the sale
            lines: Sold items
            idempotency_key: Key identifying this sale (required)
            extra: Additional sale fields (payment method, totals, ...)
        """
        try:
            request = DeductionRequest(location_id, tuple(lines), idempotency_key)
        except ValueError as e:
            return CheckoutResult(DeductionStatus.REJECTED, idempotency_key, error=str(e))

        payload = dict(extra or {})
        payload.update(request.to_dict())

        outcome = await self._send(
            request,
            lambda: self.transport.record_sale(payload, idempotency_key=idempotency_key),
            result_type=CheckoutResult,
        )
        if isinstance(outcome, DeductionResult):
            return outcome  # type: ignore[return-value]
        return CheckoutResult(
            DeductionStatus.DEDUCTED,
            idempotency_key,
            sale=outcome.get("sale", outcome),
        )

    async def _send(
        self,
        request: DeductionRequest,
        fn: Callable[[], Any],
        result_type: type = DeductionResult,
    ) -> Any:
        key = request.idempotency_key
        try:
            body = await self.retry_policy.call(fn)
        except InsufficientStockError as e:
            failed = [FailedLine.from_dict(line) for line in e.lines]
            logger.info(
                "Deduction refused: insufficient stock",
                extra={"location_id": request.location_id, "failed_lines": len(failed)},
            )
            return result_type(DeductionStatus.INSUFFICIENT_STOCK, key, failed_lines=failed)
        except ApiError as e:
            logger.warning(
                f"Deduction rejected: {e.message}",
                extra={"location_id": request.location_id, "status": e.status},
            )
            return result_type(DeductionStatus.REJECTED, key, error=e.message)
        except TransientError as e:
            logger.info(
                f"Deduction unavailable: {e.message}",
                extra={"location_id": request.location_id},
            )
            return result_type(DeductionStatus.UNAVAILABLE, key, error=e.message)

        logger.info(
            "Deduction applied",
            extra={
                "location_id": request.location_id,
                "lines": len(request.lines),
                "idempotency_key": key,
            },
        )
        if self._on_touched is not None:
            self._on_touched(request.product_ids)
        return body
