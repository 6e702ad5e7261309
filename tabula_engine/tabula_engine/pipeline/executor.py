"""Pipeline executor: runs a pipeline's steps and persists the result.

A run reads the latest snapshot of every input data source (pinned for the
duration of the run), feeds the concatenated records through the steps in
order and, only if every step succeeds, writes the final dataset as a new
version of the output data source.  Any failure leaves the output data
source untouched.

Usage::

    executor = PipelineExecutor(engine, store, event_bus=bus)
    await executor.save_pipeline(pipeline)
    execution = await executor.execute(pipeline.pipeline_id)
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Mapping
from contextlib import AsyncExitStack
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from tabula_engine.cancellation import CancellationToken, ProgressCallback, notify_progress
from tabula_engine.config import Settings
from tabula_engine.errors import (
    ConcurrencyConflictError,
    ExecutionCancelledError,
    NotFoundError,
    StepExecutionError,
    StorageError,
    TabulaError,
    ValidationError,
)
from tabula_engine.events import EventBus, EventType
from tabula_engine.models.execution import Execution, ExecutionProgress, ExecutionStatus, StepResult
from tabula_engine.models.pipeline import Pipeline
from tabula_engine.models.schema import SchemaField
from tabula_engine.models.snapshot import Record, Snapshot, SnapshotMetadata
from tabula_engine.pipeline.steps import StepContext, execute_step
from tabula_engine.snapshots.schema_inference import conform_to_schema, infer_schema
from tabula_engine.snapshots.store import SnapshotStore
from tabula_engine.state.database import get_session
from tabula_engine.state.repository import ExecutionRepository, PipelineRepository
from tabula_engine.state.tables import PipelineExecutionTable, PipelineTable

logger = logging.getLogger(__name__)


class PipelinePreview(BaseModel):
    """Result of running a pipeline over an in-memory sample."""

    records: list[dict[str, Any]] = Field(default_factory=list)
    schema_fields: list[SchemaField] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    steps: list[StepResult] = Field(default_factory=list)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def pipeline_from_row(row: PipelineTable) -> Pipeline:
    return Pipeline.model_validate(
        {
            "pipeline_id": row.pipeline_id,
            "project_id": row.project_id,
            "name": row.name,
            "description": row.description,
            "steps": row.steps_json or [],
            "input_data_source_ids": row.input_data_source_ids or [],
            "output_data_source_id": row.output_data_source_id,
            "created_at": _as_utc(row.created_at),
            "updated_at": _as_utc(row.updated_at),
        }
    )


def execution_from_row(row: PipelineExecutionTable) -> Execution:
    return Execution(
        execution_id=row.execution_id,
        pipeline_id=row.pipeline_id,
        status=ExecutionStatus(row.status),
        started_at=_as_utc(row.started_at),
        finished_at=_as_utc(row.finished_at),
        duration_ms=row.duration_ms,
        input_records=row.input_records,
        output_records=row.output_records,
        rows_processed=row.rows_processed,
        failed_step_index=row.failed_step_index,
        steps=[StepResult.model_validate(s) for s in row.steps_json or []],
        warnings=list(row.warnings_json or []),
        error=row.error_json,
        input_snapshot_ids=list(row.input_snapshot_ids or []),
        output_snapshot_id=row.output_snapshot_id,
    )


def _error_payload(exc: BaseException) -> dict[str, Any]:
    if isinstance(exc, TabulaError):
        return exc.to_dict()
    return {"kind": "internal_error", "message": str(exc), "context": {"type": type(exc).__name__}}


def _merge_schemas(snapshots: list[Snapshot]) -> list[SchemaField]:
    merged: dict[str, SchemaField] = {}
    for snapshot in snapshots:
        for schema_field in snapshot.schema_fields:
            merged.setdefault(schema_field.name, schema_field)
    return list(merged.values())


class PipelineExecutor:
    """Stores pipeline definitions and runs them.

    Parameters
    ----------
    engine:
        Async engine bound to the state store.
    store:
        Snapshot store used for inputs, join right sides and the output.
    settings:
        Engine settings; defaults to the store's settings.
    event_bus:
        Receives ``execution.*`` flow events (consumed by lineage tracking).
    """

    def __init__(
        self,
        engine: AsyncEngine,
        store: SnapshotStore,
        settings: Settings | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._engine = engine
        self._store = store
        self._settings = settings or store.settings
        self._event_bus = event_bus
        self._running: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Pipeline definitions
    # ------------------------------------------------------------------

    async def save_pipeline(self, pipeline: Pipeline | Mapping[str, Any]) -> Pipeline:
        """Validate and store a pipeline definition (insert or replace)."""
        if not isinstance(pipeline, Pipeline):
            try:
                pipeline = Pipeline.model_validate(dict(pipeline))
            except ValueError as exc:
                raise ValidationError(f"Invalid pipeline: {exc}") from exc
        try:
            async with get_session(self._engine) as session:
                row = await PipelineRepository(session).save(
                    pipeline_id=pipeline.pipeline_id,
                    project_id=pipeline.project_id,
                    name=pipeline.name,
                    description=pipeline.description,
                    steps=[s.model_dump(mode="json") for s in pipeline.steps],
                    input_data_source_ids=list(pipeline.input_data_source_ids),
                    output_data_source_id=pipeline.output_data_source_id,
                )
                saved = pipeline_from_row(row)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to save pipeline: {exc}", pipeline_id=pipeline.pipeline_id) from exc
        logger.info("Saved pipeline %s (%d steps)", saved.pipeline_id, len(saved.steps))
        return saved

    async def get_pipeline(self, pipeline_id: str) -> Pipeline:
        async with get_session(self._engine) as session:
            row = await PipelineRepository(session).get(pipeline_id)
            if row is None:
                raise NotFoundError(f"Pipeline {pipeline_id} not found", pipeline_id=pipeline_id)
            return pipeline_from_row(row)

    async def list_pipelines(self, project_id: str | None = None) -> list[Pipeline]:
        async with get_session(self._engine) as session:
            rows = await PipelineRepository(session).list_all(project_id)
            return [pipeline_from_row(r) for r in rows]

    async def get_execution(self, execution_id: str) -> Execution:
        async with get_session(self._engine) as session:
            row = await ExecutionRepository(session).get(execution_id)
            if row is None:
                raise NotFoundError(f"Execution {execution_id} not found", execution_id=execution_id)
            return execution_from_row(row)

    async def list_executions(self, pipeline_id: str, limit: int = 50) -> list[Execution]:
        async with get_session(self._engine) as session:
            rows = await ExecutionRepository(session).list_for_pipeline(pipeline_id, limit=limit)
            return [execution_from_row(r) for r in rows]

    def is_running(self, pipeline_id: str) -> bool:
        return pipeline_id in self._running

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        pipeline_id: str,
        *,
        execution_id: str | None = None,
        cancel_token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> Execution:
        """Run the stored pipeline *pipeline_id* once.

        Parameters
        ----------
        pipeline_id:
            Identifier of a saved pipeline.
        execution_id:
            Optional identifier for the new execution record.
        cancel_token:
            Checked between steps and between record batches.
        on_progress:
            Receives an :class:`ExecutionProgress` before each step and at
            the end of the run.

        Returns
        -------
        Execution
            The terminal execution record (``Success`` or ``Warning``).

        Raises
        ------
        ConcurrencyConflictError
            If the pipeline is already running.
        StepExecutionError
            If a step fails; nothing is persisted.
        ExecutionCancelledError
            If cancellation was requested.
        """
        pipeline = await self.get_pipeline(pipeline_id)
        if pipeline_id in self._running:
            raise ConcurrencyConflictError(
                f"Pipeline {pipeline_id} is already running",
                pipeline_id=pipeline_id,
                execution_id=self._running[pipeline_id],
            )
        execution = Execution(
            execution_id=execution_id or uuid.uuid4().hex,
            pipeline_id=pipeline_id,
            status=ExecutionStatus.RUNNING,
            started_at=datetime.now(UTC),
        )
        self._running[pipeline_id] = execution.execution_id
        try:
            return await self._run(pipeline, execution, cancel_token or CancellationToken(), on_progress)
        finally:
            self._running.pop(pipeline_id, None)

    async def _run(
        self,
        pipeline: Pipeline,
        execution: Execution,
        cancel_token: CancellationToken,
        on_progress: ProgressCallback | None,
    ) -> Execution:
        started = time.monotonic()
        await self._save_execution(execution)
        await self._emit(
            EventType.EXECUTION_STARTED,
            pipeline,
            {"execution_id": execution.execution_id, "pipeline_id": pipeline.pipeline_id},
        )
        total_steps = len(pipeline.steps)

        try:
            async with AsyncExitStack() as stack:
                inputs = await self._resolve_inputs(pipeline)
                if inputs:
                    await stack.enter_async_context(self._store.pin(*(s.snapshot_id for s in inputs)))
                execution.input_snapshot_ids = [s.snapshot_id for s in inputs]

                records: list[Record] = []
                for snapshot in inputs:
                    records.extend(await self._store.load_records(snapshot.snapshot_id))
                execution.input_records = len(records)
                schema_fields = _merge_schemas(inputs)

                context = StepContext(
                    settings=self._settings,
                    cancel_token=cancel_token,
                    load_right=self._load_right,
                )
                for index, step in enumerate(pipeline.steps):
                    cancel_token.raise_if_cancelled(execution_id=execution.execution_id, step_index=index)
                    await notify_progress(
                        on_progress,
                        ExecutionProgress(
                            execution_id=execution.execution_id,
                            status=ExecutionStatus.RUNNING,
                            current_step=index,
                            total_steps=total_steps,
                            current_step_type=step.type,
                            progress=100.0 * index / total_steps,
                            records_processed=execution.rows_processed,
                            message=f"Running step {index} ({step.type})",
                        ),
                    )
                    records, schema_fields, result = await self._run_step(
                        index, step, records, schema_fields, context, execution
                    )
                    execution.steps.append(result)
                    execution.warnings.extend(f"step {index} ({step.type}): {w}" for w in result.warnings)
                    await self._emit(
                        EventType.STEP_COMPLETED,
                        pipeline,
                        {
                            "execution_id": execution.execution_id,
                            "step_index": index,
                            "step_type": step.type,
                            "output_records": result.output_records,
                        },
                    )

                cancel_token.raise_if_cancelled(execution_id=execution.execution_id)
                parents = list(dict.fromkeys(execution.input_snapshot_ids + context.extra_input_snapshot_ids))
                output = await self._store.create_snapshot(
                    pipeline.output_data_source_id,
                    records,
                    schema=schema_fields,
                    metadata=SnapshotMetadata(
                        source="pipeline",
                        parent_snapshot_ids=parents,
                        pipeline_id=pipeline.pipeline_id,
                        execution_id=execution.execution_id,
                    ),
                    project_id=pipeline.project_id,
                )
        except asyncio.CancelledError:
            # The calling task was cancelled; the execution row must not stay Running.
            execution.status = ExecutionStatus.ERROR
            execution.error = ExecutionCancelledError(
                "Execution task was cancelled",
                execution_id=execution.execution_id,
            ).to_dict()
            self._finish(execution, started)
            await asyncio.shield(self._save_execution(execution))
            logger.info("Execution %s of %s interrupted", execution.execution_id[:8], pipeline.pipeline_id)
            raise
        except Exception as exc:
            execution.status = ExecutionStatus.ERROR
            execution.error = _error_payload(exc)
            if isinstance(exc, StepExecutionError):
                execution.failed_step_index = exc.step_index
            self._finish(execution, started)
            await self._save_execution(execution)
            if isinstance(exc, ExecutionCancelledError):
                logger.info("Execution %s of %s cancelled", execution.execution_id[:8], pipeline.pipeline_id)
            else:
                logger.warning(
                    "Execution %s of %s failed: %s", execution.execution_id[:8], pipeline.pipeline_id, exc
                )
            await self._emit(
                EventType.EXECUTION_FAILED,
                pipeline,
                {
                    "execution_id": execution.execution_id,
                    "pipeline_id": pipeline.pipeline_id,
                    "error": execution.error,
                },
            )
            raise

        execution.output_records = output.record_count
        execution.output_snapshot_id = output.snapshot_id
        execution.status = ExecutionStatus.WARNING if execution.warnings else ExecutionStatus.SUCCESS
        self._finish(execution, started)
        await self._save_execution(execution)
        await notify_progress(
            on_progress,
            ExecutionProgress(
                execution_id=execution.execution_id,
                status=execution.status,
                current_step=total_steps,
                total_steps=total_steps,
                progress=100.0,
                records_processed=execution.rows_processed,
                message=f"Wrote {output.data_source_id} v{output.version}",
            ),
        )
        logger.info(
            "Execution %s of %s finished %s: %d -> %d records (v%d)",
            execution.execution_id[:8],
            pipeline.pipeline_id,
            execution.status.value,
            execution.input_records,
            execution.output_records,
            output.version,
        )
        await self._emit(
            EventType.EXECUTION_SUCCEEDED,
            pipeline,
            {
                "execution_id": execution.execution_id,
                "pipeline_id": pipeline.pipeline_id,
                "input_snapshot_ids": list(output.metadata.parent_snapshot_ids),
                "output_snapshot_id": output.snapshot_id,
                "input_records": execution.input_records,
                "output_records": execution.output_records,
                "steps": [
                    {"step_index": r.step_index, "step_type": r.step_type, "output_records": r.output_records}
                    for r in execution.steps
                ],
            },
        )
        return execution

    async def _run_step(
        self,
        index: int,
        step: Any,
        records: list[Record],
        schema_fields: list[SchemaField],
        context: StepContext,
        execution: Execution,
    ) -> tuple[list[Record], list[SchemaField], StepResult]:
        step_started = time.monotonic()
        execution.rows_processed += len(records)
        try:
            output = await execute_step(step, records, context)
            output_records = output.records
            warnings = list(output.warnings)
            if output_records:
                # Every row is inspected: the schema is stored with these records.
                schema_fields, schema_warnings = infer_schema(output_records, strict=False)
                warnings.extend(schema_warnings)
                if schema_warnings:
                    output_records, _ = conform_to_schema(output_records, schema_fields)
        except ExecutionCancelledError:
            raise
        except Exception as exc:
            raise StepExecutionError(index, step.type, exc) from exc

        result = StepResult(
            step_index=index,
            step_type=step.type,
            status=ExecutionStatus.WARNING if warnings else ExecutionStatus.SUCCESS,
            input_records=len(records),
            output_records=len(output_records),
            duration_ms=(time.monotonic() - step_started) * 1000,
            warnings=warnings,
        )
        return output_records, schema_fields, result

    async def preview(
        self,
        pipeline: Pipeline,
        records: list[Record],
        limit: int = 100,
    ) -> PipelinePreview:
        """Run *pipeline*'s steps over the first *limit* of *records* without persisting."""
        if limit < 1:
            raise ValidationError("limit must be >= 1", limit=limit)
        sample = [dict(r) for r in records[:limit]]
        context = StepContext(settings=self._settings, load_right=self._load_right)
        schema_fields: list[SchemaField] = []
        if sample:
            schema_fields, _ = infer_schema(sample, self._settings.schema_sample_size, strict=False)

        # A throwaway execution collects step results; it is never saved.
        scratch = Execution(execution_id="preview", pipeline_id=pipeline.pipeline_id)
        for index, step in enumerate(pipeline.steps):
            sample, schema_fields, result = await self._run_step(index, step, sample, schema_fields, context, scratch)
            scratch.steps.append(result)
            scratch.warnings.extend(f"step {index} ({step.type}): {w}" for w in result.warnings)
        return PipelinePreview(
            records=sample,
            schema_fields=schema_fields,
            warnings=scratch.warnings,
            steps=scratch.steps,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _resolve_inputs(self, pipeline: Pipeline) -> list[Snapshot]:
        snapshots: list[Snapshot] = []
        for data_source_id in pipeline.input_data_source_ids:
            snapshot = await self._store.get_latest(data_source_id)
            if snapshot is None:
                raise NotFoundError(
                    f"Input data source {data_source_id} has no snapshots",
                    data_source_id=data_source_id,
                    pipeline_id=pipeline.pipeline_id,
                )
            snapshots.append(snapshot)
        return snapshots

    async def _load_right(self, data_source_id: str, snapshot_id: str | None) -> tuple[str, list[Record]]:
        if snapshot_id is None:
            latest = await self._store.get_latest(data_source_id)
            if latest is None:
                raise NotFoundError(
                    f"Join data source {data_source_id} has no snapshots",
                    data_source_id=data_source_id,
                )
            snapshot_id = latest.snapshot_id
        async with self._store.pin(snapshot_id) as (snapshot,):
            if snapshot.data_source_id != data_source_id:
                raise ValidationError(
                    f"Snapshot {snapshot_id} does not belong to data source {data_source_id}",
                    snapshot_id=snapshot_id,
                    data_source_id=data_source_id,
                )
            return snapshot_id, await self._store.load_records(snapshot_id)

    @staticmethod
    def _finish(execution: Execution, started: float) -> None:
        execution.finished_at = datetime.now(UTC)
        execution.duration_ms = (time.monotonic() - started) * 1000

    async def _save_execution(self, execution: Execution) -> None:
        values = {
            "execution_id": execution.execution_id,
            "pipeline_id": execution.pipeline_id,
            "status": execution.status.value,
            "started_at": execution.started_at,
            "finished_at": execution.finished_at,
            "duration_ms": execution.duration_ms,
            "input_records": execution.input_records,
            "output_records": execution.output_records,
            "rows_processed": execution.rows_processed,
            "failed_step_index": execution.failed_step_index,
            "steps_json": [s.model_dump(mode="json") for s in execution.steps],
            "warnings_json": list(execution.warnings),
            "error_json": execution.error,
            "input_snapshot_ids": list(execution.input_snapshot_ids),
            "output_snapshot_id": execution.output_snapshot_id,
        }
        try:
            async with get_session(self._engine) as session:
                await ExecutionRepository(session).save(values)
        except SQLAlchemyError as exc:
            raise StorageError(
                f"Failed to save execution: {exc}",
                execution_id=execution.execution_id,
            ) from exc

    async def _emit(self, event_type: EventType, pipeline: Pipeline, data: dict[str, Any]) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.emit(
            event_type,
            project_id=pipeline.project_id,
            data=data,
            correlation_id=data.get("execution_id"),
        )
