"""Engine configuration loaded from environment variables."""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class PlatformEnv(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class StateStoreType(str, Enum):
    POSTGRES = "postgres"
    LOCAL = "local"


class Settings(BaseSettings):
    """Engine settings loaded from environment variables with TABULA_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="TABULA_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: PlatformEnv = PlatformEnv.DEV
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///.tabula/state.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Retry of transient storage / version-race errors
    max_retries: int = 3
    retry_backoff_base: float = 0.05
    retry_max_delay: float = 2.0

    # Schema inference
    schema_sample_size: int = 1000

    # Batching (cancellation and progress are checked between batches)
    diff_batch_size: int = 5000
    pipeline_batch_size: int = 5000
    record_insert_batch_size: int = 1000

    # Custom script sandbox
    script_timeout_seconds: float = 30.0
    script_cpu_seconds: int = 30
    script_memory_limit_mb: int = 512
    script_max_output_rows: int = 1_000_000

    # Retention
    default_keep_versions: int = 10

    # Telemetry
    structured_logging: bool = False

    @field_validator("schema_sample_size", "diff_batch_size", "pipeline_batch_size", "record_insert_batch_size")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be a positive integer")
        return v

    @property
    def state_store_type(self) -> StateStoreType:
        if self.database_url.startswith("sqlite"):
            return StateStoreType.LOCAL
        return StateStoreType.POSTGRES


def load_settings(**overrides: object) -> Settings:
    """Load settings from environment, with optional overrides for testing."""
    settings = Settings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info("Loaded settings for environment: %s", settings.env.value)

    return settings
