"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from typing import Self

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class APISettings(BaseSettings):
    """FastAPI application settings.

    All values can be overridden via environment variables prefixed with
    ``TABULA_API_`` (e.g. ``TABULA_API_PORT=9000``) or through a ``.env``
    file in the working directory.  Engine tuning (batch sizes, sandbox
    limits) lives in :class:`tabula_engine.config.Settings`.
    """

    model_config = SettingsConfigDict(
        env_prefix="TABULA_API_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    database_url: str = "sqlite+aiosqlite:///.tabula/state.db"

    # Create tables on startup for local SQLite; PostgreSQL uses Alembic.
    auto_create_tables: bool = True

    cors_origins: list[str] = ["http://localhost:3000"]
    cors_allow_credentials: bool = True

    # Structured JSON logging.
    structured_logging: bool = False

    @model_validator(mode="after")
    def _validate_cors_credentials_not_wildcard(self) -> Self:
        if self.cors_allow_credentials and "*" in self.cors_origins:
            raise ValueError("Cannot use wildcard origins with credentials. Specify explicit origins instead of '*'.")
        return self


def load_api_settings() -> APISettings:
    """Construct settings from the environment / ``.env`` file."""
    return APISettings()
