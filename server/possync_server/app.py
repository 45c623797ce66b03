"""
FastAPI application factory for the PosSync reference server.

This module creates the FastAPI app with:
- CORS configuration for browser-based POS clients
- SQLite stock store lifecycle
- Inventory API routes under /api
- 400 responses (not 422) for malformed requests

Usage:
    uvicorn possync_server.app:create_app --factory --port 8000
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings
from .routes import router
from .store import StockStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Purge expired idempotency records on startup."""
    store: StockStore = app.state.store
    purged = await store.purge_expired_requests()
    logger.info("PosSync server started", extra={"purged_requests": purged})

    yield

    logger.info("PosSync server stopped")


def create_app(settings: Settings | None = None, store: StockStore | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Server settings (loaded from environment if omitted)
        store: Stock store (built from settings if omitted)
    """
    settings = settings or Settings()
    if store is None:
        store = StockStore(
            settings.db_path,
            busy_timeout_ms=settings.busy_timeout_ms,
            idempotency_ttl_seconds=settings.idempotency_ttl_seconds,
        )
    store.initialize()

    app = FastAPI(
        title="PosSync Server",
        description=(
            "Reference inventory server: versioned products, atomic stock "
            "deduction and idempotent sales."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={
                "code": "VALIDATION_ERROR",
                "message": "Malformed request",
                "errors": [
                    {"loc": list(err.get("loc", ())), "msg": err.get("msg")}
                    for err in exc.errors()
                ],
            },
        )

    app.include_router(router, prefix="/api")

    return app


def main() -> None:
    """Run the server with uvicorn."""
    import uvicorn

    settings = Settings()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
