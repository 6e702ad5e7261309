"""Pipeline definition models.

A pipeline is a named, ordered list of transform steps.  Each step is one
variant of a closed tagged union discriminated by its ``type`` field, so a
stored pipeline definition round-trips through JSON without losing the
strongly typed configuration of each step.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, field_validator, model_validator


class StepType(str, Enum):
    FILTER = "filter"
    MAP = "map"
    SORT = "sort"
    AGGREGATE = "aggregate"
    JOIN = "join"
    DEDUPLICATE = "deduplicate"
    CUSTOM_SCRIPT = "custom_script"


class FilterOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN = "less_than"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IN = "in"
    NOT_IN = "not_in"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"


class MapTransform(str, Enum):
    TO_UPPERCASE = "to_uppercase"
    TO_LOWERCASE = "to_lowercase"
    TRIM = "trim"
    TO_NUMBER = "to_number"
    TO_STRING = "to_string"
    TO_BOOLEAN = "to_boolean"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class AggregateFunction(str, Enum):
    SUM = "sum"
    AVG = "avg"
    COUNT = "count"
    MIN = "min"
    MAX = "max"


class MergeType(str, Enum):
    INNER = "inner"
    LEFT = "left"
    RIGHT = "right"
    OUTER = "outer"
    UNION = "union"


class ConflictResolution(str, Enum):
    LEFT = "left"
    RIGHT = "right"
    MERGE = "merge"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Step configurations
# ---------------------------------------------------------------------------


class Predicate(BaseModel):
    field: str = Field(..., min_length=1)
    operator: FilterOperator
    value: Any = None


class FilterStep(BaseModel):
    """Keep records satisfying every predicate."""

    type: Literal["filter"] = "filter"
    predicates: list[Predicate] = Field(default_factory=list)


class FieldMapping(BaseModel):
    source_field: str | None = Field(
        default=None,
        description="Field to read; when omitted the target field is derived from ``default``.",
    )
    target_field: str = Field(..., min_length=1)
    transform: MapTransform | None = None
    default: Any = None


class MapStep(BaseModel):
    """Rename, derive or drop columns."""

    type: Literal["map"] = "map"
    mappings: list[FieldMapping] = Field(default_factory=list)
    drop_fields: list[str] = Field(default_factory=list)
    keep_unmapped: bool = Field(
        default=True,
        description="Carry fields not mentioned by any mapping into the output.",
    )
    rename: bool = Field(
        default=False,
        description="Remove each mapping's source field once copied to the target.",
    )


class SortKey(BaseModel):
    field: str = Field(..., min_length=1)
    direction: SortDirection = SortDirection.ASC


class SortStep(BaseModel):
    """Stable multi-key sort; nulls always last."""

    type: Literal["sort"] = "sort"
    fields: list[SortKey] = Field(..., min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _accept_single_key(cls, data: Any) -> Any:
        if isinstance(data, dict) and "fields" not in data and "field" in data:
            data = dict(data)
            data["fields"] = [{"field": data.pop("field"), "direction": data.pop("direction", "asc")}]
        return data


class Aggregation(BaseModel):
    field: str = Field(..., min_length=1)
    function: AggregateFunction
    alias: str | None = None

    @property
    def output_name(self) -> str:
        return self.alias or self.field


class AggregateStep(BaseModel):
    type: Literal["aggregate"] = "aggregate"
    group_by: list[str] = Field(default_factory=list)
    aggregations: list[Aggregation] = Field(..., min_length=1)

    @field_validator("group_by", mode="before")
    @classmethod
    def _coerce_group_by(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v


class JoinStep(BaseModel):
    """Merge the running dataset with another data source's snapshot."""

    type: Literal["join"] = "join"
    right_data_source_id: str = Field(..., min_length=1)
    right_snapshot_id: str | None = Field(
        default=None,
        description="Pin a specific right-hand snapshot; defaults to the latest.",
    )
    key: list[str] = Field(..., min_length=1)
    merge_type: MergeType = MergeType.INNER
    conflict_resolution: ConflictResolution = ConflictResolution.MERGE

    @field_validator("key", mode="before")
    @classmethod
    def _coerce_key(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v


class DeduplicateStep(BaseModel):
    type: Literal["deduplicate"] = "deduplicate"
    key: list[str] | None = Field(
        default=None,
        description="Fields identifying a duplicate; None compares whole records.",
    )
    keep: Literal["first", "last"] = "first"

    @field_validator("key", mode="before")
    @classmethod
    def _coerce_key(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v


class CustomScriptStep(BaseModel):
    """User-supplied ``transform`` function run inside the script sandbox."""

    type: Literal["custom_script"] = "custom_script"
    script: str = Field(..., min_length=1)
    mode: Literal["row", "dataset"] = "row"
    timeout_seconds: float | None = Field(default=None, gt=0)


PipelineStep = Annotated[
    Union[
        FilterStep,
        MapStep,
        SortStep,
        AggregateStep,
        JoinStep,
        DeduplicateStep,
        CustomScriptStep,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class Pipeline(BaseModel):
    """Named, ordered list of steps producing snapshots of an output data source."""

    pipeline_id: str = Field(..., min_length=1)
    project_id: str = Field(default="default", min_length=1)
    name: str = Field(..., min_length=1)
    description: str | None = None
    steps: list[PipelineStep] = Field(default_factory=list)
    input_data_source_ids: list[str] = Field(
        default_factory=list,
        description="Data sources whose latest snapshots are concatenated as the run input.",
    )
    output_data_source_id: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
