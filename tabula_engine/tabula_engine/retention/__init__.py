"""Snapshot retention and cleanup."""

from tabula_engine.retention.cleanup import (
    CleanupResult,
    RetentionManager,
    RetentionPolicy,
    RetentionStrategy,
)

__all__ = ["CleanupResult", "RetentionManager", "RetentionPolicy", "RetentionStrategy"]
