"""Lineage endpoints: record flows and query the lineage graph."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query, status

from tabula_api.dependencies import LineageDep
from tabula_api.schemas import LineageEdgeBody, LineageNodeResponse, TrackLineageRequest, TrackLineageResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/lineage", tags=["lineage"])


@router.post("/track", response_model=TrackLineageResponse, status_code=status.HTTP_201_CREATED)
async def track_data_flow(body: TrackLineageRequest, lineage: LineageDep) -> TrackLineageResponse:
    """Record an edge; ``409`` when it would close a cycle."""
    edge = await lineage.track_data_flow(
        body.source_node_id,
        body.target_node_id,
        body.transformation_type,
        body.record_count,
    )
    return TrackLineageResponse(edge=LineageEdgeBody.model_validate(edge.model_dump()))


@router.get("/paths")
async def find_paths(
    lineage: LineageDep,
    source: str = Query(..., min_length=1),
    target: str = Query(..., min_length=1),
    max_depth: int = Query(default=10, ge=1, le=100, alias="maxDepth"),
) -> list[dict[str, Any]]:
    paths = await lineage.find_paths(source, target, max_depth)
    return [
        {
            "nodes": p.nodes,
            "edges": [
                LineageEdgeBody.model_validate(e.model_dump()).model_dump(mode="json", by_alias=True)
                for e in p.edges
            ],
        }
        for p in paths
    ]


@router.get("/{node_id:path}", response_model=LineageNodeResponse)
async def get_node_lineage(node_id: str, lineage: LineageDep) -> LineageNodeResponse:
    """Return the upstream and downstream closure of a node and its direct edges."""
    edges = await lineage.list_edges(node_id)
    return LineageNodeResponse(
        node_id=node_id,
        upstream=await lineage.get_upstream(node_id),
        downstream=await lineage.get_downstream(node_id),
        edges=[LineageEdgeBody.model_validate(e.model_dump()) for e in edges],
    )
