"""
API routes for the PosSync reference server.

Provides the REST endpoints the PosSync SDK talks to:
- Versioned product reads and writes
- Atomic multi-line stock deduction
- Idempotent sale recording
- Health probe
"""

import logging
from typing import Any

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .store import (
    DeductLine,
    InsufficientStockError,
    ProductNotFoundError,
    StaleVersionError,
    StockStore,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["PosSync"])


# --- Request Models ---


class ProductCreateRequest(BaseModel):
    """Request to create a product."""

    id: str | None = Field(None, description="Product ID (generated if omitted)")
    location_id: str | None = Field(None, description="Owning location")
    fields: dict[str, Any] = Field(default_factory=dict, description="Product fields")


class ProductUpdateRequest(BaseModel):
    """Version-checked update of a product."""

    version: int = Field(..., ge=0, description="Version the fields were computed against")
    fields: dict[str, Any] = Field(..., description="Fields to merge")
    location_id: str | None = Field(None, description="Location scope of the write")


class StockItem(BaseModel):
    """One deduction line."""

    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., alias="productId", min_length=1)
    variant_code: str | None = Field(None, alias="variantCode")
    quantity: int = Field(..., gt=0)


class DeductRequest(BaseModel):
    """Atomic deduction of every item at a location."""

    model_config = ConfigDict(populate_by_name=True)

    location_id: str = Field(..., alias="locationId", min_length=1)
    items: list[StockItem] = Field(..., min_length=1)

    def lines(self) -> list[DeductLine]:
        return [
            DeductLine(item.product_id, item.quantity, item.variant_code)
            for item in self.items
        ]


class SaleRequest(DeductRequest):
    """A sale; extra fields (payment method, totals, ...) are stored as given."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def extra_fields(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


# --- Helpers ---


def get_store(request: Request) -> StockStore:
    """Get the store from app state."""
    return request.app.state.store


def error_response(status_code: int, code: str, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"code": code, "message": message, **extra},
    )


# --- Routes ---


@router.get("/health")
async def health() -> dict[str, str]:
    """Warm-up probe."""
    return {"status": "ok"}


@router.post("/products", status_code=201)
async def create_product(request: Request, body: ProductCreateRequest) -> Any:
    store = get_store(request)
    if body.id and await store.get_product(body.id) is not None:
        return error_response(409, "ALREADY_EXISTS", f"Product {body.id} already exists")
    return await store.create_product(
        body.fields, product_id=body.id, location_id=body.location_id
    )


@router.get("/products/{product_id}")
async def get_product(
    request: Request,
    product_id: str,
    location_id: str | None = Query(None),
) -> Any:
    product = await get_store(request).get_product(product_id, location_id)
    if product is None:
        return error_response(404, "NOT_FOUND", f"Product {product_id} not found")
    return product


@router.api_route("/products/{product_id}", methods=["PUT", "PATCH"])
async def update_product(
    request: Request,
    product_id: str,
    body: ProductUpdateRequest,
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
) -> Any:
    try:
        return await get_store(request).update_product(
            product_id,
            body.version,
            body.fields,
            location_id=body.location_id,
            idempotency_key=idempotency_key,
        )
    except ProductNotFoundError:
        return error_response(404, "NOT_FOUND", f"Product {product_id} not found")
    except StaleVersionError as e:
        logger.info(
            "Rejected stale write",
            extra={
                "product_id": product_id,
                "submitted_version": body.version,
                "current_version": e.current["version"],
            },
        )
        return error_response(
            409,
            "STALE_VERSION",
            "Product was modified by someone else",
            current=e.current,
        )


@router.post("/inventory/deduct")
async def deduct(
    request: Request,
    body: DeductRequest,
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
) -> Any:
    try:
        return await get_store(request).deduct(
            body.location_id, body.lines(), idempotency_key=idempotency_key
        )
    except InsufficientStockError as e:
        return error_response(
            409, "INSUFFICIENT_STOCK", "Not enough stock", lines=e.lines
        )


@router.post("/sales", status_code=201)
async def record_sale(
    request: Request,
    body: SaleRequest,
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
) -> Any:
    if not idempotency_key:
        return error_response(400, "IDEMPOTENCY_KEY_REQUIRED", "Idempotency-Key header is required")
    try:
        return await get_store(request).record_sale(
            idempotency_key,
            body.location_id,
            body.lines(),
            body.extra_fields(),
        )
    except InsufficientStockError as e:
        return error_response(
            409, "INSUFFICIENT_STOCK", "Not enough stock", lines=e.lines
        )
