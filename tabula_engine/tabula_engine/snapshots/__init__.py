"""Snapshot store and schema inference."""

from tabula_engine.snapshots.schema_inference import (
    compute_checksum,
    infer_schema,
    validate_records,
    value_type,
)
from tabula_engine.snapshots.store import SnapshotStore

__all__ = [
    "SnapshotStore",
    "compute_checksum",
    "infer_schema",
    "validate_records",
    "value_type",
]
