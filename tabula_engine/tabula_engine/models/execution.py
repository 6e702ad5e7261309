"""Execution models tracking one run of a pipeline.

An :class:`Execution` moves through ``Idle -> Running -> {Success, Error,
Warning}``.  Terminal states may re-enter ``Running`` only through a new
trigger, which creates a new execution row.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ExecutionStatus(str, Enum):
    """Lifecycle state of a pipeline execution."""

    IDLE = "Idle"
    RUNNING = "Running"
    SUCCESS = "Success"
    ERROR = "Error"
    WARNING = "Warning"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.SUCCESS, ExecutionStatus.ERROR, ExecutionStatus.WARNING)


class StepResult(BaseModel):
    step_index: int = Field(..., ge=0)
    step_type: str
    status: ExecutionStatus
    input_records: int = 0
    output_records: int = 0
    duration_ms: float = 0.0
    warnings: list[str] = Field(default_factory=list)
    error: dict[str, Any] | None = None


class Execution(BaseModel):
    """Persisted record of one pipeline run."""

    execution_id: str = Field(..., min_length=1)
    pipeline_id: str = Field(..., min_length=1)
    status: ExecutionStatus = ExecutionStatus.IDLE
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: float | None = None
    input_records: int = 0
    output_records: int = 0
    rows_processed: int = Field(
        default=0,
        description="Sum of records fed into every step of the run.",
    )
    failed_step_index: int | None = None
    steps: list[StepResult] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    error: dict[str, Any] | None = Field(
        default=None,
        description="Structured ``{kind, message, context}`` of the failure, if any.",
    )
    input_snapshot_ids: list[str] = Field(default_factory=list)
    output_snapshot_id: str | None = None


class ExecutionProgress(BaseModel):
    """Progress notification delivered to execution callbacks."""

    execution_id: str
    status: ExecutionStatus
    current_step: int = 0
    total_steps: int = 0
    current_step_type: str | None = None
    progress: float = Field(default=0.0, ge=0.0, le=100.0)
    records_processed: int = 0
    message: str = ""
