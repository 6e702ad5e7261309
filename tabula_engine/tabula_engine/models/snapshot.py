"""Snapshot models for immutable, versioned copies of a dataset.

A snapshot records every row of a data source at one point in time.  Once
created its records and schema never change; a new import or pipeline run
produces a new snapshot with the next version number.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from tabula_engine.models.schema import SchemaField

Record = dict[str, Any]


class SnapshotMetadata(BaseModel):
    """Descriptive metadata attached to a snapshot at creation time."""

    checksum: str | None = Field(
        default=None,
        description="SHA-256 digest of the canonical JSON encoding of the records.",
    )
    file_type: str | None = Field(
        default=None,
        description="Format of the imported file, e.g. 'csv' or 'json'.",
    )
    source: str = Field(
        default="import",
        description="What produced the snapshot: 'import' or 'pipeline'.",
    )
    parent_snapshot_ids: list[str] = Field(
        default_factory=list,
        description="Snapshots this one was derived from (pipeline inputs).",
    )
    pipeline_id: str | None = None
    execution_id: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class DataSource(BaseModel):
    """Logical identity of an external dataset and its latest-version pointer."""

    data_source_id: str = Field(..., min_length=1)
    project_id: str = Field(default="default", min_length=1)
    name: str | None = None
    current_version: int = Field(
        default=0,
        ge=0,
        description="Version of the newest existing snapshot (0 when none exist).",
    )
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Snapshot(BaseModel):
    """Immutable, versioned copy of a dataset."""

    snapshot_id: str = Field(..., min_length=1)
    data_source_id: str = Field(..., min_length=1)
    project_id: str = Field(default="default")
    version: int = Field(..., ge=1)
    schema_fields: list[SchemaField] = Field(default_factory=list)
    record_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    metadata: SnapshotMetadata = Field(default_factory=SnapshotMetadata)

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.schema_fields]


class SnapshotFilter(BaseModel):
    """Filters accepted by ``SnapshotStore.list_by_data_source``."""

    project_id: str | None = None
    min_version: int | None = Field(default=None, ge=1)
    max_version: int | None = Field(default=None, ge=1)
    created_after: datetime | None = None
    created_before: datetime | None = None
    limit: int | None = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)


class RecordPage(BaseModel):
    """A page of records read from one snapshot's partition."""

    snapshot: Snapshot
    records: list[Record] = Field(default_factory=list)
    total: int = 0
    limit: int = 100
    offset: int = 0
