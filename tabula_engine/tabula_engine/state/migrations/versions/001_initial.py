"""Initial schema for the Tabula state store.

Creates the data source pointer table, snapshot metadata, the per-snapshot
record partition, lineage edges, pipelines and pipeline executions.

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_json = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def upgrade() -> None:
    # ------------------------------------------------------------------
    # data_sources
    # ------------------------------------------------------------------
    op.create_table(
        "data_sources",
        sa.Column("data_source_id", sa.String(256), primary_key=True),
        sa.Column("project_id", sa.String(128), nullable=False, server_default="default"),
        sa.Column("name", sa.String(512), nullable=True),
        sa.Column("current_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_assigned_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_data_sources_project", "data_sources", ["project_id"])

    # ------------------------------------------------------------------
    # snapshots
    # ------------------------------------------------------------------
    op.create_table(
        "snapshots",
        sa.Column("snapshot_id", sa.String(64), primary_key=True),
        sa.Column(
            "data_source_id",
            sa.String(256),
            sa.ForeignKey("data_sources.data_source_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("project_id", sa.String(128), nullable=False, server_default="default"),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("schema_json", _json, nullable=False),
        sa.Column("record_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("checksum", sa.String(64), nullable=True),
        sa.Column("metadata_json", _json, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("data_source_id", "version", name="uq_snapshots_source_version"),
    )
    op.create_index("ix_snapshots_data_source", "snapshots", ["data_source_id"])
    op.create_index("ix_snapshots_project", "snapshots", ["project_id"])

    # ------------------------------------------------------------------
    # snapshot_records
    # ------------------------------------------------------------------
    op.create_table(
        "snapshot_records",
        sa.Column(
            "snapshot_id",
            sa.String(64),
            sa.ForeignKey("snapshots.snapshot_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("ordinal", sa.Integer(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("snapshot_id", "ordinal"),
    )

    # ------------------------------------------------------------------
    # lineage_edges
    # ------------------------------------------------------------------
    op.create_table(
        "lineage_edges",
        sa.Column("edge_id", sa.String(64), primary_key=True),
        sa.Column("source_node_id", sa.String(512), nullable=False),
        sa.Column("target_node_id", sa.String(512), nullable=False),
        sa.Column("transformation_type", sa.String(128), nullable=False),
        sa.Column("record_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("execution_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_lineage_edges_source", "lineage_edges", ["source_node_id"])
    op.create_index("ix_lineage_edges_target", "lineage_edges", ["target_node_id"])

    # ------------------------------------------------------------------
    # pipelines
    # ------------------------------------------------------------------
    op.create_table(
        "pipelines",
        sa.Column("pipeline_id", sa.String(64), primary_key=True),
        sa.Column("project_id", sa.String(128), nullable=False, server_default="default"),
        sa.Column("name", sa.String(512), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("steps_json", _json, nullable=False),
        sa.Column("input_data_source_ids", _json, nullable=False),
        sa.Column("output_data_source_id", sa.String(256), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_pipelines_project", "pipelines", ["project_id"])

    # ------------------------------------------------------------------
    # pipeline_executions
    # ------------------------------------------------------------------
    op.create_table(
        "pipeline_executions",
        sa.Column("execution_id", sa.String(64), primary_key=True),
        sa.Column(
            "pipeline_id",
            sa.String(64),
            sa.ForeignKey("pipelines.pipeline_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Float(), nullable=True),
        sa.Column("input_records", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("output_records", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rows_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_step_index", sa.Integer(), nullable=True),
        sa.Column("steps_json", _json, nullable=False),
        sa.Column("warnings_json", _json, nullable=False),
        sa.Column("error_json", _json, nullable=True),
        sa.Column("input_snapshot_ids", _json, nullable=False),
        sa.Column("output_snapshot_id", sa.String(64), nullable=True),
    )
    op.create_index("ix_pipeline_executions_pipeline", "pipeline_executions", ["pipeline_id"])
    op.create_index("ix_pipeline_executions_status", "pipeline_executions", ["status"])


def downgrade() -> None:
    op.drop_table("pipeline_executions")
    op.drop_table("pipelines")
    op.drop_table("lineage_edges")
    op.drop_table("snapshot_records")
    op.drop_table("snapshots")
    op.drop_table("data_sources")
