"""
Shared fixtures for integration tests.

Every test gets a fresh reference server backed by a temporary SQLite file.
Clients talk to it in-process through httpx.ASGITransport, so no port is
opened.
"""

import tempfile
from pathlib import Path

import httpx
import pytest

from server.possync_server.app import create_app
from server.possync_server.config import Settings


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def app(data_dir):
    """Reference server application."""
    return create_app(Settings(db_path=str(data_dir / "server.db")))


@pytest.fixture
def server_store(app):
    """The server's stock store, for seeding and assertions."""
    return app.state.store


@pytest.fixture
async def api(app):
    """Raw HTTP client against the server."""
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://testserver"
    ) as client:
        yield client
