"""
Configuration for the PosSync reference server.

Uses pydantic-settings for environment variable loading.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Server configuration loaded from environment."""

    # Storage
    db_path: str = Field(default="./possync_server.db", description="SQLite database file")
    busy_timeout_ms: int = Field(default=5000, description="SQLite busy timeout")

    # Bind settings
    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8000, description="Bind port")

    # CORS settings
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins",
    )

    # Idempotency
    idempotency_ttl_seconds: int = Field(
        default=300, description="How long successful responses are replayed"
    )

    log_level: str = Field(default="INFO", description="Logging level")

    model_config = {"env_prefix": "POSSYNC_SERVER_"}
