"""Lineage edge models."""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, Field


class LineageEdge(BaseModel):
    """Directed record of data flowing from one processing node to another."""

    edge_id: str = Field(..., min_length=1)
    source_node_id: str = Field(..., min_length=1)
    target_node_id: str = Field(..., min_length=1)
    transformation_type: str = Field(..., min_length=1)
    record_count: int = Field(default=0, ge=0)
    execution_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class LineagePath(BaseModel):
    nodes: list[str]
    edges: list[LineageEdge] = Field(default_factory=list)

    @property
    def length(self) -> int:
        return len(self.edges)
