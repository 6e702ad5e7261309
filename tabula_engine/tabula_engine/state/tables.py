"""SQLAlchemy 2.0 ORM table definitions for the Tabula state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by Alembic migrations and the
repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")

# Record payloads use plain JSON everywhere: JSONB reorders object keys and
# records must keep their field order.
_RecordJsonType = JSON()


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Shared declarative base for all Tabula tables."""


# ---------------------------------------------------------------------------
# Data sources (latest-version pointer table)
# ---------------------------------------------------------------------------


class DataSourceTable(Base):
    """One row per data source holding its latest-version pointer.

    ``current_version`` is the version of the newest existing snapshot.
    ``last_assigned_version`` only ever grows, so deleted version numbers are
    never handed out again.
    """

    __tablename__ = "data_sources"

    data_source_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(128), nullable=False, default="default")
    name: Mapped[str | None] = mapped_column(String(512), nullable=True)
    current_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_assigned_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (Index("ix_data_sources_project", "project_id"),)


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


class SnapshotTable(Base):
    """Immutable metadata row for one version of a data source."""

    __tablename__ = "snapshots"

    snapshot_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    data_source_id: Mapped[str] = mapped_column(
        String(256),
        ForeignKey("data_sources.data_source_id", ondelete="CASCADE"),
        nullable=False,
    )
    project_id: Mapped[str] = mapped_column(String(128), nullable=False, default="default")
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    schema_json: Mapped[list[dict[str, Any]]] = mapped_column(_JsonType, nullable=False, default=list)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    checksum: Mapped[str | None] = mapped_column(String(64), nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("data_source_id", "version", name="uq_snapshots_source_version"),
        Index("ix_snapshots_data_source", "data_source_id"),
        Index("ix_snapshots_project", "project_id"),
    )


class SnapshotRecordTable(Base):
    """Record partition of a snapshot, one row per record in input order."""

    __tablename__ = "snapshot_records"

    snapshot_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("snapshots.snapshot_id", ondelete="CASCADE"),
        nullable=False,
    )
    ordinal: Mapped[int] = mapped_column(Integer, nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(_RecordJsonType, nullable=False)

    __table_args__ = (PrimaryKeyConstraint("snapshot_id", "ordinal"),)


# ---------------------------------------------------------------------------
# Lineage
# ---------------------------------------------------------------------------


class LineageEdgeTable(Base):
    __tablename__ = "lineage_edges"

    edge_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    source_node_id: Mapped[str] = mapped_column(String(512), nullable=False)
    target_node_id: Mapped[str] = mapped_column(String(512), nullable=False)
    transformation_type: Mapped[str] = mapped_column(String(128), nullable=False)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    execution_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_lineage_edges_source", "source_node_id"),
        Index("ix_lineage_edges_target", "target_node_id"),
    )


# ---------------------------------------------------------------------------
# Pipelines and executions
# ---------------------------------------------------------------------------


class PipelineTable(Base):
    __tablename__ = "pipelines"

    pipeline_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(128), nullable=False, default="default")
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    steps_json: Mapped[list[dict[str, Any]]] = mapped_column(_JsonType, nullable=False, default=list)
    input_data_source_ids: Mapped[list[str]] = mapped_column(_JsonType, nullable=False, default=list)
    output_data_source_id: Mapped[str] = mapped_column(String(256), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (Index("ix_pipelines_project", "project_id"),)


class PipelineExecutionTable(Base):
    __tablename__ = "pipeline_executions"

    execution_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    pipeline_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("pipelines.pipeline_id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    input_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rows_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_step_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    steps_json: Mapped[list[dict[str, Any]]] = mapped_column(_JsonType, nullable=False, default=list)
    warnings_json: Mapped[list[str]] = mapped_column(_JsonType, nullable=False, default=list)
    error_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    input_snapshot_ids: Mapped[list[str]] = mapped_column(_JsonType, nullable=False, default=list)
    output_snapshot_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        Index("ix_pipeline_executions_pipeline", "pipeline_id"),
        Index("ix_pipeline_executions_status", "status"),
    )
