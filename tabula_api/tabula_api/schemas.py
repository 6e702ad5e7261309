"""Request and response models for the API endpoints.

Bodies use camelCase on the wire; every model also accepts snake_case
field names.  Record payloads are passed through untouched.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from tabula_engine.models.diff import Comparison, DiffOptions
from tabula_engine.models.schema import SchemaField
from tabula_engine.models.snapshot import Snapshot


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Snapshot schemas
# ---------------------------------------------------------------------------


class CreateSnapshotRequest(CamelModel):
    data_source_id: str = Field(..., min_length=1)
    records: list[dict[str, Any]]
    schema_fields: list[SchemaField] | None = Field(default=None, alias="schema")
    metadata: dict[str, Any] | None = None
    project_id: str = Field(default="default", min_length=1)


class SnapshotCreatedResponse(CamelModel):
    id: str
    version: int
    record_count: int
    created_at: datetime


class SnapshotSummaryResponse(CamelModel):
    id: str
    data_source_id: str
    project_id: str
    version: int
    record_count: int
    schema_fields: list[SchemaField] = Field(default_factory=list, alias="schema")
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> SnapshotSummaryResponse:
        return cls(
            id=snapshot.snapshot_id,
            data_source_id=snapshot.data_source_id,
            project_id=snapshot.project_id,
            version=snapshot.version,
            record_count=snapshot.record_count,
            schema_fields=snapshot.schema_fields,
            metadata=snapshot.metadata.model_dump(mode="json"),
            created_at=snapshot.created_at,
        )


class SuccessResponse(CamelModel):
    success: bool = True


class CompareOptions(CamelModel):
    include_unchanged: bool = False
    trim_strings: bool = True
    case_sensitive: bool = True
    ignore_fields: list[str] = Field(default_factory=list)
    duplicate_keys: Literal["error", "first"] = "error"
    max_changes: int | None = Field(default=None, ge=1)

    def to_diff_options(self) -> DiffOptions:
        return DiffOptions(**self.model_dump())


class CompareRequest(CamelModel):
    from_snapshot_id: str = Field(..., min_length=1)
    to_snapshot_id: str = Field(..., min_length=1)
    comparison_key: list[str] = Field(..., min_length=1)
    options: CompareOptions = Field(default_factory=CompareOptions)

    @field_validator("comparison_key", mode="before")
    @classmethod
    def _coerce_key(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v


class FieldChangeBody(CamelModel):
    field: str
    old_value: Any = None
    new_value: Any = None
    change_type: str
    value_type: str


class RecordChangeBody(CamelModel):
    key: Any
    change_type: str
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    changes: list[FieldChangeBody] = Field(default_factory=list)


class SummaryBody(CamelModel):
    total_from: int
    total_to: int
    added: int
    removed: int
    modified: int
    unchanged: int
    change_percentage: float


class FieldCountBody(CamelModel):
    field: str
    count: int


class StatisticsBody(CamelModel):
    total_field_changes: int
    fields_changed: dict[str, int]
    top_changed_fields: list[FieldCountBody]
    largest_change: RecordChangeBody | None = None
    average_field_changes_per_record: float


class DiagnosticsBody(CamelModel):
    duplicate_keys: list[Any] = Field(default_factory=list)
    duplicate_keys_from: list[Any] = Field(default_factory=list)
    duplicate_keys_to: list[Any] = Field(default_factory=list)
    truncated: bool = False


class ComparisonBody(CamelModel):
    from_snapshot_id: str
    to_snapshot_id: str
    from_version: int
    to_version: int
    comparison_key: list[str]
    added: list[dict[str, Any]]
    removed: list[dict[str, Any]]
    modified: list[RecordChangeBody]
    unchanged: list[RecordChangeBody]
    unchanged_count: int
    summary: SummaryBody
    statistics: StatisticsBody
    diagnostics: DiagnosticsBody
    duration_ms: float
    compared_at: datetime

    @classmethod
    def from_comparison(cls, comparison: Comparison) -> ComparisonBody:
        payload = comparison.model_dump(mode="json")
        payload["unchanged_count"] = comparison.unchanged_count
        return cls.model_validate(payload)


class CompareResponse(CamelModel):
    comparison: ComparisonBody


class CleanupRequest(CamelModel):
    project_id: str = "default"
    data_source_id: str = Field(..., min_length=1)
    keep: int


class CleanupResponse(CamelModel):
    deleted_count: int
    kept_count: int
    deleted_versions: list[int] = Field(default_factory=list)
    kept_versions: list[int] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Data source schemas
# ---------------------------------------------------------------------------


class DataSourceResponse(CamelModel):
    id: str
    project_id: str
    name: str | None = None
    current_version: int
    created_at: datetime
    updated_at: datetime


class RecordPageResponse(CamelModel):
    data_source_id: str
    snapshot_id: str
    version: int
    records: list[dict[str, Any]]
    total: int
    limit: int
    offset: int
    has_more: bool


# ---------------------------------------------------------------------------
# Lineage schemas
# ---------------------------------------------------------------------------


class TrackLineageRequest(CamelModel):
    source_node_id: str = Field(..., min_length=1)
    target_node_id: str = Field(..., min_length=1)
    transformation_type: str = Field(..., min_length=1)
    record_count: int = Field(default=0, ge=0)


class LineageEdgeBody(CamelModel):
    edge_id: str
    source_node_id: str
    target_node_id: str
    transformation_type: str
    record_count: int
    execution_id: str | None = None
    created_at: datetime


class TrackLineageResponse(CamelModel):
    edge: LineageEdgeBody


class LineageNodeResponse(CamelModel):
    node_id: str
    upstream: list[str]
    downstream: list[str]
    edges: list[LineageEdgeBody]


# ---------------------------------------------------------------------------
# Pipeline schemas
# ---------------------------------------------------------------------------


class CreatePipelineRequest(CamelModel):
    pipeline_id: str | None = None
    project_id: str = "default"
    name: str = Field(..., min_length=1)
    description: str | None = None
    steps: list[dict[str, Any]] = Field(default_factory=list)
    input_data_source_ids: list[str] = Field(default_factory=list)
    output_data_source_id: str = Field(..., min_length=1)


class PipelineResponse(CamelModel):
    pipeline_id: str
    project_id: str
    name: str
    description: str | None = None
    steps: list[dict[str, Any]]
    input_data_source_ids: list[str]
    output_data_source_id: str
    created_at: datetime
    updated_at: datetime


class PreviewRequest(CamelModel):
    records: list[dict[str, Any]]
    limit: int = Field(default=100, ge=1, le=10_000)


class PreviewResponse(CamelModel):
    records: list[dict[str, Any]]
    schema_fields: list[SchemaField] = Field(alias="schema")
    warnings: list[str]


class StepResultBody(CamelModel):
    step_index: int
    step_type: str
    status: str
    input_records: int
    output_records: int
    duration_ms: float
    warnings: list[str] = Field(default_factory=list)


class ExecutionResponse(CamelModel):
    execution_id: str
    pipeline_id: str
    status: str
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: float | None = None
    input_records: int = 0
    output_records: int = 0
    rows_processed: int = 0
    failed_step_index: int | None = None
    steps: list[StepResultBody] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    error: dict[str, Any] | None = None
    input_snapshot_ids: list[str] = Field(default_factory=list)
    output_snapshot_id: str | None = None


# ---------------------------------------------------------------------------
# Task schemas
# ---------------------------------------------------------------------------


class TaskResponse(CamelModel):
    task_id: str
    kind: str
    status: str
    progress: float
    progress_detail: dict[str, Any] | None = None
    result: Any = None
    error: dict[str, Any] | None = None
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
