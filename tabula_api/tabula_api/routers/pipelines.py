"""Pipeline endpoints: definitions, execution, history and preview."""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Query, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from tabula_api.dependencies import ExecutorDep, TasksDep
from tabula_api.schemas import (
    CreatePipelineRequest,
    ExecutionResponse,
    PipelineResponse,
    PreviewRequest,
    PreviewResponse,
    TaskResponse,
)
from tabula_engine.cancellation import CancellationToken, ProgressCallback
from tabula_engine.errors import ConcurrencyConflictError
from tabula_engine.models.execution import Execution
from tabula_engine.models.pipeline import Pipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pipelines", tags=["pipelines"])


def _pipeline_response(pipeline: Pipeline) -> PipelineResponse:
    return PipelineResponse.model_validate(pipeline.model_dump(mode="json"))


def _execution_response(execution: Execution) -> ExecutionResponse:
    return ExecutionResponse.model_validate(execution.model_dump(mode="json"))


@router.post("", response_model=PipelineResponse, status_code=status.HTTP_201_CREATED)
async def create_pipeline(body: CreatePipelineRequest, executor: ExecutorDep) -> PipelineResponse:
    """Create or replace a pipeline definition.

    Step configurations use the engine's field names, e.g.
    ``{"type": "filter", "predicates": [{"field": "a", "operator": "equals", "value": 1}]}``.
    """
    payload = body.model_dump()
    payload["pipeline_id"] = body.pipeline_id or uuid.uuid4().hex
    return _pipeline_response(await executor.save_pipeline(payload))


@router.get("", response_model=list[PipelineResponse])
async def list_pipelines(
    executor: ExecutorDep,
    project_id: str | None = Query(default=None, alias="projectId"),
) -> list[PipelineResponse]:
    return [_pipeline_response(p) for p in await executor.list_pipelines(project_id)]


@router.get("/{pipeline_id}", response_model=PipelineResponse)
async def get_pipeline(pipeline_id: str, executor: ExecutorDep) -> PipelineResponse:
    return _pipeline_response(await executor.get_pipeline(pipeline_id))


@router.post("/{pipeline_id}/execute", response_model=ExecutionResponse)
async def execute_pipeline(
    pipeline_id: str,
    executor: ExecutorDep,
    tasks: TasksDep,
    background: bool = Query(default=False),
) -> ExecutionResponse | JSONResponse:
    """Run a pipeline once.

    A failing step answers ``422`` with the step index and cause.  With
    ``?background=true`` the run is submitted as a task and ``202`` is
    returned with the task to poll.
    """
    if not background:
        return _execution_response(await executor.execute(pipeline_id))

    await executor.get_pipeline(pipeline_id)
    if executor.is_running(pipeline_id):
        raise ConcurrencyConflictError(f"Pipeline {pipeline_id} is already running", pipeline_id=pipeline_id)

    async def _run(token: CancellationToken, on_progress: ProgressCallback) -> Execution:
        return await executor.execute(pipeline_id, cancel_token=token, on_progress=on_progress)

    info = tasks.submit("pipeline", _run)
    task = TaskResponse.model_validate(info.model_dump(mode="json"))
    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=jsonable_encoder(task, by_alias=True))


@router.get("/{pipeline_id}/executions", response_model=list[ExecutionResponse])
async def list_executions(
    pipeline_id: str,
    executor: ExecutorDep,
    limit: int = Query(default=50, ge=1, le=500),
) -> list[ExecutionResponse]:
    await executor.get_pipeline(pipeline_id)
    return [_execution_response(e) for e in await executor.list_executions(pipeline_id, limit=limit)]


@router.post("/{pipeline_id}/preview", response_model=PreviewResponse)
async def preview_pipeline(pipeline_id: str, body: PreviewRequest, executor: ExecutorDep) -> PreviewResponse:
    """Run the pipeline over the supplied sample records without persisting anything."""
    pipeline = await executor.get_pipeline(pipeline_id)
    preview = await executor.preview(pipeline, body.records, body.limit)
    return PreviewResponse(records=preview.records, schema_fields=preview.schema_fields, warnings=preview.warnings)
