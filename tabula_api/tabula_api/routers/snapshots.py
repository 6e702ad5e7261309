"""Snapshot endpoints: create, list, read, delete, compare and cleanup."""

from __future__ import annotations

import logging
from typing import Literal

from fastapi import APIRouter, Query, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, PlainTextResponse

from tabula_api.dependencies import DifferDep, RetentionDep, StoreDep, TasksDep
from tabula_api.schemas import (
    CleanupRequest,
    CleanupResponse,
    CompareRequest,
    CompareResponse,
    ComparisonBody,
    CreateSnapshotRequest,
    SnapshotCreatedResponse,
    SnapshotSummaryResponse,
    SuccessResponse,
    TaskResponse,
)
from tabula_engine.cancellation import CancellationToken, ProgressCallback
from tabula_engine.diff import export_comparison
from tabula_engine.models.diff import Comparison

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/snapshots", tags=["snapshots"])

_MEDIA_TYPES = {"csv": "text/csv", "text": "text/plain"}


@router.post("", response_model=SnapshotCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_snapshot(body: CreateSnapshotRequest, store: StoreDep) -> SnapshotCreatedResponse:
    """Store *records* as the next version of the data source."""
    snapshot = await store.create_snapshot(
        body.data_source_id,
        body.records,
        schema=body.schema_fields,
        metadata=body.metadata,
        project_id=body.project_id,
    )
    return SnapshotCreatedResponse(
        id=snapshot.snapshot_id,
        version=snapshot.version,
        record_count=snapshot.record_count,
        created_at=snapshot.created_at,
    )


@router.get("", response_model=list[SnapshotSummaryResponse])
async def list_snapshots(
    store: StoreDep,
    data_source_id: str | None = Query(default=None, alias="dataSourceId"),
    project_id: str | None = Query(default=None, alias="projectId"),
) -> list[SnapshotSummaryResponse]:
    """List snapshots, newest version first within each data source."""
    snapshots = await store.list_snapshots(project_id=project_id, data_source_id=data_source_id)
    return [SnapshotSummaryResponse.from_snapshot(s) for s in snapshots]


@router.post("/compare", response_model=CompareResponse)
async def compare_snapshots(
    body: CompareRequest,
    differ: DifferDep,
    tasks: TasksDep,
    fmt: Literal["json", "csv", "text"] = Query(default="json", alias="format"),
    background: bool = Query(default=False),
) -> CompareResponse | PlainTextResponse | JSONResponse:
    """Diff two snapshots on a comparison key.

    ``?format=csv|text`` returns an export instead of JSON.  With
    ``?background=true`` the diff runs as a task and ``202`` is returned
    with the task to poll.
    """
    options = body.options.to_diff_options()

    async def _run(token: CancellationToken, on_progress: ProgressCallback) -> Comparison:
        return await differ.compare(
            body.from_snapshot_id,
            body.to_snapshot_id,
            body.comparison_key,
            options,
            cancel_token=token,
            on_progress=on_progress,
        )

    if background:
        info = tasks.submit("compare", _run)
        task = TaskResponse.model_validate(info.model_dump(mode="json"))
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=jsonable_encoder(task, by_alias=True))

    comparison = await _run(CancellationToken(), None)
    if fmt != "json":
        return PlainTextResponse(export_comparison(comparison, fmt), media_type=_MEDIA_TYPES[fmt])
    return CompareResponse(comparison=ComparisonBody.from_comparison(comparison))


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup_snapshots(body: CleanupRequest, retention: RetentionDep) -> CleanupResponse:
    """Keep the *keep* most recent snapshots of a data source and delete the rest."""
    result = await retention.cleanup(body.data_source_id, body.keep, project_id=body.project_id)
    return CleanupResponse(
        deleted_count=result.deleted_count,
        kept_count=result.kept_count,
        deleted_versions=result.deleted_versions,
        kept_versions=result.kept_versions,
    )


@router.get("/{snapshot_id}", response_model=SnapshotSummaryResponse)
async def get_snapshot(snapshot_id: str, store: StoreDep) -> SnapshotSummaryResponse:
    return SnapshotSummaryResponse.from_snapshot(await store.require(snapshot_id))


@router.delete("/{snapshot_id}", response_model=SuccessResponse)
async def delete_snapshot(snapshot_id: str, store: StoreDep) -> SuccessResponse:
    """Delete a snapshot; waits while a diff or pipeline run has it pinned."""
    await store.delete_snapshot(snapshot_id)
    return SuccessResponse(success=True)
