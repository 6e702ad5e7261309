"""Data source endpoints: listing and paginated record access."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Query

from tabula_api.dependencies import StoreDep
from tabula_api.schemas import DataSourceResponse, RecordPageResponse
from tabula_engine.errors import NotFoundError
from tabula_engine.models.snapshot import DataSource

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/data-sources", tags=["data-sources"])


def _to_response(source: DataSource) -> DataSourceResponse:
    return DataSourceResponse(
        id=source.data_source_id,
        project_id=source.project_id,
        name=source.name,
        current_version=source.current_version,
        created_at=source.created_at,
        updated_at=source.updated_at,
    )


@router.get("", response_model=list[DataSourceResponse])
async def list_data_sources(
    store: StoreDep,
    project_id: str | None = Query(default=None, alias="projectId"),
) -> list[DataSourceResponse]:
    return [_to_response(s) for s in await store.list_data_sources(project_id)]


@router.get("/{data_source_id}", response_model=DataSourceResponse)
async def get_data_source(data_source_id: str, store: StoreDep) -> DataSourceResponse:
    source = await store.get_data_source(data_source_id)
    if source is None:
        raise NotFoundError(f"Data source {data_source_id} not found", data_source_id=data_source_id)
    return _to_response(source)


@router.get("/{data_source_id}/data", response_model=RecordPageResponse)
async def get_data(
    data_source_id: str,
    store: StoreDep,
    version_id: str | None = Query(default=None, alias="versionId", description="Snapshot id; latest when omitted."),
    limit: int = Query(default=100, ge=1, le=10_000),
    offset: int = Query(default=0, ge=0),
) -> RecordPageResponse:
    """Return one page of records, bound to a single snapshot for consistent paging."""
    page = await store.get_record_page(data_source_id, version_id, limit=limit, offset=offset)
    return RecordPageResponse(
        data_source_id=data_source_id,
        snapshot_id=page.snapshot.snapshot_id,
        version=page.snapshot.version,
        records=page.records,
        total=page.total,
        limit=limit,
        offset=offset,
        has_more=offset + len(page.records) < page.total,
    )
