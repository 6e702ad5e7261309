"""Domain models for the Tabula engine."""

from tabula_engine.models.diff import (
    ChangeType,
    Comparison,
    ComparisonDiagnostics,
    ComparisonStatistics,
    ComparisonSummary,
    DiffOptions,
    FieldChange,
    RecordChange,
)
from tabula_engine.models.execution import (
    Execution,
    ExecutionProgress,
    ExecutionStatus,
    StepResult,
)
from tabula_engine.models.lineage import LineageEdge, LineagePath
from tabula_engine.models.pipeline import (
    AggregateStep,
    CustomScriptStep,
    DeduplicateStep,
    FilterStep,
    JoinStep,
    MapStep,
    Pipeline,
    PipelineStep,
    SortStep,
    StepType,
)
from tabula_engine.models.schema import FieldType, SchemaField
from tabula_engine.models.snapshot import (
    DataSource,
    Record,
    RecordPage,
    Snapshot,
    SnapshotFilter,
    SnapshotMetadata,
)

__all__ = [
    "AggregateStep",
    "ChangeType",
    "Comparison",
    "ComparisonDiagnostics",
    "ComparisonStatistics",
    "ComparisonSummary",
    "CustomScriptStep",
    "DataSource",
    "DeduplicateStep",
    "DiffOptions",
    "Execution",
    "ExecutionProgress",
    "ExecutionStatus",
    "FieldChange",
    "FieldType",
    "FilterStep",
    "JoinStep",
    "LineageEdge",
    "LineagePath",
    "MapStep",
    "Pipeline",
    "PipelineStep",
    "Record",
    "RecordChange",
    "RecordPage",
    "SchemaField",
    "Snapshot",
    "SnapshotFilter",
    "SnapshotMetadata",
    "SortStep",
    "StepResult",
    "StepType",
]
