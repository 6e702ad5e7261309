"""Lineage tracking over a persisted directed acyclic graph.

Nodes are opaque identifiers such as ``snapshot:<id>`` or
``execution:<id>/step:<n>``; edges record that data flowed from one node to
another.  The graph is mirrored in memory as a :class:`networkx.DiGraph`
and every insertion is checked for reachability first, so the persisted
edge set always remains acyclic.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from datetime import UTC, datetime

import networkx as nx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from tabula_engine.errors import CycleError, StorageError, ValidationError
from tabula_engine.events import EventPayload, EventType
from tabula_engine.models.lineage import LineageEdge, LineagePath
from tabula_engine.state.database import get_session
from tabula_engine.state.repository import LineageRepository
from tabula_engine.state.tables import LineageEdgeTable

logger = logging.getLogger(__name__)


def snapshot_node(snapshot_id: str) -> str:
    return f"snapshot:{snapshot_id}"


def step_node(execution_id: str, step_index: int) -> str:
    return f"execution:{execution_id}/step:{step_index}"


def _edge_from_row(row: LineageEdgeTable) -> LineageEdge:
    created_at = row.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=UTC)
    return LineageEdge(
        edge_id=row.edge_id,
        source_node_id=row.source_node_id,
        target_node_id=row.target_node_id,
        transformation_type=row.transformation_type,
        record_count=row.record_count,
        execution_id=row.execution_id,
        created_at=created_at,
    )


def _find_path(graph: nx.DiGraph, start: str, goal: str) -> list[str] | None:
    """Depth-first search from *start*; return the node path to *goal* or ``None``."""
    if start not in graph or goal not in graph:
        return None
    parents: dict[str, str | None] = {start: None}
    stack: deque[str] = deque([start])
    while stack:
        current = stack.pop()
        if current == goal:
            path = [current]
            while parents[path[-1]] is not None:
                path.append(parents[path[-1]])  # type: ignore[arg-type]
            return list(reversed(path))
        for successor in sorted(graph.successors(current), reverse=True):
            if successor not in parents:
                parents[successor] = current
                stack.append(successor)
    return None


class LineageTracker:
    """Records and queries lineage edges.

    Parameters
    ----------
    engine:
        Async engine bound to the state store.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._graph = nx.DiGraph()
        self._edges: dict[str, LineageEdge] = {}
        self._lock = asyncio.Lock()
        self._loaded = False

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        async with get_session(self._engine) as session:
            rows = await LineageRepository(session).list_all()
        for row in rows:
            self._add_to_graph(_edge_from_row(row))
        self._loaded = True
        logger.debug("Loaded %d lineage edge(s)", len(rows))

    def _add_to_graph(self, edge: LineageEdge) -> None:
        self._edges[edge.edge_id] = edge
        if self._graph.has_edge(edge.source_node_id, edge.target_node_id):
            self._graph.edges[edge.source_node_id, edge.target_node_id]["edge_ids"].append(edge.edge_id)
        else:
            self._graph.add_edge(edge.source_node_id, edge.target_node_id, edge_ids=[edge.edge_id])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def track_data_flow(
        self,
        source_node_id: str,
        target_node_id: str,
        transformation_type: str,
        record_count: int = 0,
        *,
        execution_id: str | None = None,
    ) -> LineageEdge:
        """Record that data flowed from *source_node_id* to *target_node_id*.

        Raises
        ------
        ValidationError
            If an identifier is empty or *record_count* is negative.
        CycleError
            If *source_node_id* is reachable from *target_node_id*.
        """
        if not source_node_id or not target_node_id or not transformation_type:
            raise ValidationError(
                "source_node_id, target_node_id and transformation_type are required",
                source_node_id=source_node_id,
                target_node_id=target_node_id,
            )
        if record_count < 0:
            raise ValidationError("record_count must be >= 0", record_count=record_count)

        # Check and insert under one lock so concurrent inserts cannot jointly close a cycle.
        async with self._lock:
            await self._ensure_loaded()
            if source_node_id == target_node_id:
                raise CycleError(source_node_id, target_node_id, [source_node_id, target_node_id])
            back_path = _find_path(self._graph, target_node_id, source_node_id)
            if back_path is not None:
                raise CycleError(source_node_id, target_node_id, [source_node_id, *back_path])

            edge = LineageEdge(
                edge_id=uuid.uuid4().hex,
                source_node_id=source_node_id,
                target_node_id=target_node_id,
                transformation_type=transformation_type,
                record_count=record_count,
                execution_id=execution_id,
                created_at=datetime.now(UTC),
            )
            try:
                async with get_session(self._engine) as session:
                    await LineageRepository(session).add(**edge.model_dump())
            except SQLAlchemyError as exc:
                raise StorageError(f"Failed to record lineage edge: {exc}") from exc
            self._add_to_graph(edge)

        logger.debug(
            "Lineage %s -> %s (%s, %d records)",
            source_node_id,
            target_node_id,
            transformation_type,
            record_count,
        )
        return edge

    async def on_flow_event(self, payload: EventPayload) -> None:
        """Event handler recording the edges of a successful pipeline run."""
        if payload.event_type is not EventType.EXECUTION_SUCCEEDED:
            return
        data = payload.data
        execution_id = data["execution_id"]
        output_node = snapshot_node(data["output_snapshot_id"])
        steps = data.get("steps", [])

        if not steps:
            for snapshot_id in data.get("input_snapshot_ids", []):
                await self.track_data_flow(
                    snapshot_node(snapshot_id),
                    output_node,
                    "pipeline",
                    data.get("output_records", 0),
                    execution_id=execution_id,
                )
            return

        first = step_node(execution_id, steps[0]["step_index"])
        for snapshot_id in data.get("input_snapshot_ids", []):
            await self.track_data_flow(
                snapshot_node(snapshot_id),
                first,
                steps[0]["step_type"],
                data.get("input_records", 0),
                execution_id=execution_id,
            )
        for previous, current in zip(steps, steps[1:], strict=False):
            await self.track_data_flow(
                step_node(execution_id, previous["step_index"]),
                step_node(execution_id, current["step_index"]),
                current["step_type"],
                previous["output_records"],
                execution_id=execution_id,
            )
        await self.track_data_flow(
            step_node(execution_id, steps[-1]["step_index"]),
            output_node,
            "output",
            steps[-1]["output_records"],
            execution_id=execution_id,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _traverse(self, node_id: str, *, upstream: bool) -> list[str]:
        async with self._lock:
            await self._ensure_loaded()
            if node_id not in self._graph:
                return []
            neighbours = self._graph.predecessors if upstream else self._graph.successors
            visited: set[str] = set()
            queue: deque[str] = deque(neighbours(node_id))
            while queue:
                current = queue.popleft()
                if current in visited:
                    continue
                visited.add(current)
                queue.extend(neighbours(current))
        return sorted(visited)

    async def get_upstream(self, node_id: str) -> list[str]:
        """Return every node from which data transitively flows into *node_id*."""
        return await self._traverse(node_id, upstream=True)

    async def get_downstream(self, node_id: str) -> list[str]:
        """Return every node that transitively receives data from *node_id*."""
        return await self._traverse(node_id, upstream=False)

    async def find_paths(self, source_node_id: str, target_node_id: str, max_depth: int = 10) -> list[LineagePath]:
        """Return simple paths from *source_node_id* to *target_node_id* of at most *max_depth* edges."""
        if max_depth < 1:
            raise ValidationError("max_depth must be >= 1", max_depth=max_depth)
        async with self._lock:
            await self._ensure_loaded()
            if source_node_id not in self._graph or target_node_id not in self._graph:
                return []
            node_paths = sorted(
                nx.all_simple_paths(self._graph, source_node_id, target_node_id, cutoff=max_depth)
            )
            paths: list[LineagePath] = []
            for nodes in node_paths:
                edges = [
                    self._edges[self._graph.edges[a, b]["edge_ids"][0]]
                    for a, b in zip(nodes, nodes[1:], strict=False)
                ]
                paths.append(LineagePath(nodes=list(nodes), edges=edges))
        return sorted(paths, key=lambda p: (p.length, p.nodes))

    async def list_edges(self, node_id: str | None = None) -> list[LineageEdge]:
        """Return all edges, or only those touching *node_id*, oldest first."""
        async with self._lock:
            await self._ensure_loaded()
            edges = list(self._edges.values())
        if node_id is not None:
            edges = [e for e in edges if node_id in (e.source_node_id, e.target_node_id)]
        return sorted(edges, key=lambda e: (e.created_at, e.edge_id))
