"""
PosSync reference server - inventory API for the PosSync SDK.

This server implements the HTTP contract the SDK relies on:
1. Version-checked product writes (409 STALE_VERSION with current state)
2. All-or-nothing multi-line stock deduction (409 INSUFFICIENT_STOCK)
3. Idempotency-Key replay of successful responses
4. A health probe for warming a cold backend

It is backed by a single SQLite file and is meant for local development
and in-process end-to-end tests.
"""

from .app import create_app
from .config import Settings
from .store import StockStore

__all__ = ["create_app", "Settings", "StockStore"]
