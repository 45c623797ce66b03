"""
PosSync Test Suite.

This package contains:
- unit/: Unit tests (fakes and mocks, in-memory and temporary SQLite stores)
- integration/: SDK against the reference server in-process (httpx ASGITransport)
"""
