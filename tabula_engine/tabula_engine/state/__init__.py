"""State persistence layer (PostgreSQL or local SQLite)."""

from tabula_engine.state.database import get_engine, get_session, get_session_factory
from tabula_engine.state.repository import (
    DataSourceRepository,
    ExecutionRepository,
    LineageRepository,
    PipelineRepository,
    SnapshotRecordRepository,
    SnapshotRepository,
)

__all__ = [
    "DataSourceRepository",
    "ExecutionRepository",
    "LineageRepository",
    "PipelineRepository",
    "SnapshotRecordRepository",
    "SnapshotRepository",
    "get_engine",
    "get_session",
    "get_session_factory",
]
