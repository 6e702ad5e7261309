"""Diff models for comparing two snapshots record by record.

These models represent the output of comparing a *from* snapshot (A) with a
*to* snapshot (B) on a comparison key.  A :class:`Comparison` is owned by the
caller and never persisted by the engine.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, computed_field, field_validator


class ChangeType(str, Enum):
    """Classification of a record (or field) between two snapshots."""

    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"


class DiffOptions(BaseModel):
    """Options controlling key normalisation and output size."""

    include_unchanged: bool = Field(
        default=False,
        description="Emit unchanged records in the comparison output.",
    )
    trim_strings: bool = Field(
        default=True,
        description="Strip surrounding whitespace from string keys and values before comparing.",
    )
    case_sensitive: bool = Field(
        default=True,
        description="When False, string keys and values are compared case-insensitively.",
    )
    ignore_fields: list[str] = Field(
        default_factory=list,
        description="Fields excluded from the modified check.",
    )
    duplicate_keys: Literal["error", "first"] = Field(
        default="error",
        description="'error' raises AmbiguousKeyError; 'first' keeps the first occurrence.",
    )
    max_changes: int | None = Field(
        default=None,
        ge=1,
        description="Truncate each change list to this many entries (counts stay exact).",
    )
    batch_size: int | None = Field(
        default=None,
        ge=1,
        description="Records read per batch; defaults to the engine setting.",
    )


class FieldChange(BaseModel):
    """Before/after values of one field within a modified record."""

    field: str
    old_value: Any = None
    new_value: Any = None
    change_type: ChangeType = ChangeType.MODIFIED
    value_type: str = "null"


class RecordChange(BaseModel):
    """A record classified as modified or unchanged, with its key."""

    key: Any
    change_type: ChangeType
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    changes: list[FieldChange] = Field(default_factory=list)


class ComparisonSummary(BaseModel):
    total_from: int = 0
    total_to: int = 0
    added: int = 0
    removed: int = 0
    modified: int = 0
    unchanged: int = 0
    change_percentage: float = 0.0


class FieldChangeCount(BaseModel):
    field: str
    count: int


class ComparisonStatistics(BaseModel):
    total_field_changes: int = 0
    fields_changed: dict[str, int] = Field(default_factory=dict)
    top_changed_fields: list[FieldChangeCount] = Field(default_factory=list)
    largest_change: RecordChange | None = Field(
        default=None,
        description="The modified record with the most field changes.",
    )
    average_field_changes_per_record: float = 0.0


class ComparisonDiagnostics(BaseModel):
    """Non-fatal observations made while diffing."""

    duplicate_keys_from: list[Any] = Field(default_factory=list)
    duplicate_keys_to: list[Any] = Field(default_factory=list)
    truncated: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def duplicate_keys(self) -> list[Any]:
        return self.duplicate_keys_from + self.duplicate_keys_to


class Comparison(BaseModel):
    """Full result of diffing snapshot A against snapshot B."""

    from_snapshot_id: str
    to_snapshot_id: str
    from_version: int = 0
    to_version: int = 0
    comparison_key: list[str]
    added: list[dict[str, Any]] = Field(default_factory=list)
    removed: list[dict[str, Any]] = Field(default_factory=list)
    modified: list[RecordChange] = Field(default_factory=list)
    unchanged: list[RecordChange] = Field(default_factory=list)
    summary: ComparisonSummary = Field(default_factory=ComparisonSummary)
    statistics: ComparisonStatistics = Field(default_factory=ComparisonStatistics)
    diagnostics: ComparisonDiagnostics = Field(default_factory=ComparisonDiagnostics)
    duration_ms: float = 0.0
    compared_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("comparison_key", mode="before")
    @classmethod
    def _coerce_key(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v

    @property
    def unchanged_count(self) -> int:
        return self.summary.unchanged
