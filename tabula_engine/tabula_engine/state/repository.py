"""Repository classes providing CRUD access to the Tabula state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for
committing (or relying on the ``get_session`` context manager).
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tabula_engine.state.tables import (
    DataSourceTable,
    LineageEdgeTable,
    PipelineExecutionTable,
    PipelineTable,
    SnapshotRecordTable,
    SnapshotTable,
)

logger = logging.getLogger(__name__)

_MAX_PAGE_SIZE = 10_000


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    """
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# DataSourceRepository
# ---------------------------------------------------------------------------


class DataSourceRepository:
    """Access to the ``data_sources`` latest-version pointer table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, data_source_id: str, *, for_update: bool = False) -> DataSourceTable | None:
        stmt = select(DataSourceTable).where(DataSourceTable.data_source_id == data_source_id)
        if for_update and "postgresql" in _dialect_name(self._session):
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def ensure(
        self,
        data_source_id: str,
        project_id: str = "default",
        name: str | None = None,
    ) -> DataSourceTable:
        """Register *data_source_id* on first use and return its row locked for update."""
        await _dialect_upsert_nothing(
            self._session,
            DataSourceTable,
            values={
                "data_source_id": data_source_id,
                "project_id": project_id,
                "name": name,
                "current_version": 0,
                "last_assigned_version": 0,
            },
            index_elements=["data_source_id"],
        )
        await self._session.flush()
        row = await self.get(data_source_id, for_update=True)
        assert row is not None  # noqa: S101
        return row

    async def list_all(self, project_id: str | None = None) -> list[DataSourceTable]:
        stmt = select(DataSourceTable)
        if project_id is not None:
            stmt = stmt.where(DataSourceTable.project_id == project_id)
        stmt = stmt.order_by(DataSourceTable.data_source_id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def assign_version(self, row: DataSourceTable) -> int:
        """Advance the high-water mark and point the data source at the new version."""
        next_version = row.last_assigned_version + 1
        row.last_assigned_version = next_version
        row.current_version = next_version
        await self._session.flush()
        return next_version

    async def recompute_current_version(self, data_source_id: str) -> int:
        """Set ``current_version`` to the highest remaining snapshot version (0 when none)."""
        max_stmt = select(func.coalesce(func.max(SnapshotTable.version), 0)).where(
            SnapshotTable.data_source_id == data_source_id
        )
        current = int((await self._session.execute(max_stmt)).scalar_one())
        await self._session.execute(
            update(DataSourceTable)
            .where(DataSourceTable.data_source_id == data_source_id)
            .values(current_version=current)
        )
        await self._session.flush()
        return current


# ---------------------------------------------------------------------------
# SnapshotRepository
# ---------------------------------------------------------------------------


class SnapshotRepository:
    """CRUD operations for the ``snapshots`` metadata table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        snapshot_id: str,
        data_source_id: str,
        project_id: str,
        version: int,
        schema: list[dict[str, Any]],
        record_count: int,
        checksum: str | None,
        metadata: dict[str, Any],
        created_at: datetime,
    ) -> SnapshotTable:
        row = SnapshotTable(
            snapshot_id=snapshot_id,
            data_source_id=data_source_id,
            project_id=project_id,
            version=version,
            schema_json=schema,
            record_count=record_count,
            checksum=checksum,
            metadata_json=metadata,
            created_at=created_at,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_by_id(self, snapshot_id: str) -> SnapshotTable | None:
        stmt = select(SnapshotTable).where(SnapshotTable.snapshot_id == snapshot_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_version(self, data_source_id: str, version: int) -> SnapshotTable | None:
        stmt = select(SnapshotTable).where(
            SnapshotTable.data_source_id == data_source_id,
            SnapshotTable.version == version,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_latest(self, data_source_id: str) -> SnapshotTable | None:
        """Return the snapshot the data source's pointer currently designates."""
        stmt = (
            select(SnapshotTable)
            .join(
                DataSourceTable,
                (DataSourceTable.data_source_id == SnapshotTable.data_source_id)
                & (DataSourceTable.current_version == SnapshotTable.version),
            )
            .where(SnapshotTable.data_source_id == data_source_id)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_by_data_source(
        self,
        data_source_id: str,
        *,
        project_id: str | None = None,
        min_version: int | None = None,
        max_version: int | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[SnapshotTable]:
        """Return snapshots of *data_source_id* ordered by version descending."""
        stmt = select(SnapshotTable).where(SnapshotTable.data_source_id == data_source_id)
        if project_id is not None:
            stmt = stmt.where(SnapshotTable.project_id == project_id)
        if min_version is not None:
            stmt = stmt.where(SnapshotTable.version >= min_version)
        if max_version is not None:
            stmt = stmt.where(SnapshotTable.version <= max_version)
        if created_after is not None:
            stmt = stmt.where(SnapshotTable.created_at >= created_after)
        if created_before is not None:
            stmt = stmt.where(SnapshotTable.created_at <= created_before)
        stmt = stmt.order_by(SnapshotTable.version.desc())
        if limit is not None:
            stmt = stmt.limit(min(limit, _MAX_PAGE_SIZE))
        if offset:
            stmt = stmt.offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_all(
        self,
        project_id: str | None = None,
        data_source_id: str | None = None,
    ) -> list[SnapshotTable]:
        stmt = select(SnapshotTable)
        if project_id is not None:
            stmt = stmt.where(SnapshotTable.project_id == project_id)
        if data_source_id is not None:
            stmt = stmt.where(SnapshotTable.data_source_id == data_source_id)
        stmt = stmt.order_by(SnapshotTable.data_source_id, SnapshotTable.version.desc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def delete(self, snapshot_id: str) -> bool:
        """Delete a snapshot and its record partition.  Returns ``False`` if absent."""
        await self._session.execute(delete(SnapshotRecordTable).where(SnapshotRecordTable.snapshot_id == snapshot_id))
        result = await self._session.execute(delete(SnapshotTable).where(SnapshotTable.snapshot_id == snapshot_id))
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# SnapshotRecordRepository
# ---------------------------------------------------------------------------


class SnapshotRecordRepository:
    """Reads and writes of one snapshot's record partition."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert_batch(
        self,
        snapshot_id: str,
        records: list[dict[str, Any]],
        start_ordinal: int = 0,
    ) -> None:
        if not records:
            return
        rows = [
            {"snapshot_id": snapshot_id, "ordinal": start_ordinal + i, "data": record}
            for i, record in enumerate(records)
        ]
        await self._session.execute(insert(SnapshotRecordTable), rows)

    async def fetch(
        self,
        snapshot_id: str,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Return records of *snapshot_id* in insertion order."""
        stmt = (
            select(SnapshotRecordTable.data)
            .where(SnapshotRecordTable.snapshot_id == snapshot_id)
            .order_by(SnapshotRecordTable.ordinal)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        if offset:
            stmt = stmt.offset(offset)
        result = await self._session.execute(stmt)
        return [dict(row) for row in result.scalars().all()]

    async def count(self, snapshot_id: str) -> int:
        stmt = select(func.count()).where(SnapshotRecordTable.snapshot_id == snapshot_id)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())


# ---------------------------------------------------------------------------
# LineageRepository
# ---------------------------------------------------------------------------


class LineageRepository:
    """Persistence of lineage edges."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(
        self,
        edge_id: str,
        source_node_id: str,
        target_node_id: str,
        transformation_type: str,
        record_count: int,
        execution_id: str | None,
        created_at: datetime,
    ) -> LineageEdgeTable:
        row = LineageEdgeTable(
            edge_id=edge_id,
            source_node_id=source_node_id,
            target_node_id=target_node_id,
            transformation_type=transformation_type,
            record_count=record_count,
            execution_id=execution_id,
            created_at=created_at,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_all(self) -> list[LineageEdgeTable]:
        stmt = select(LineageEdgeTable).order_by(LineageEdgeTable.created_at, LineageEdgeTable.edge_id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# PipelineRepository
# ---------------------------------------------------------------------------


class PipelineRepository:
    """CRUD operations for stored pipeline definitions."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def save(
        self,
        pipeline_id: str,
        project_id: str,
        name: str,
        description: str | None,
        steps: list[dict[str, Any]],
        input_data_source_ids: list[str],
        output_data_source_id: str,
    ) -> PipelineTable:
        """Insert a pipeline, or replace the definition of an existing one."""
        row = await self.get(pipeline_id)
        if row is None:
            row = PipelineTable(pipeline_id=pipeline_id)
            self._session.add(row)
        row.project_id = project_id
        row.name = name
        row.description = description
        row.steps_json = steps
        row.input_data_source_ids = input_data_source_ids
        row.output_data_source_id = output_data_source_id
        await self._session.flush()
        return row

    async def get(self, pipeline_id: str) -> PipelineTable | None:
        stmt = select(PipelineTable).where(PipelineTable.pipeline_id == pipeline_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self, project_id: str | None = None) -> list[PipelineTable]:
        stmt = select(PipelineTable)
        if project_id is not None:
            stmt = stmt.where(PipelineTable.project_id == project_id)
        result = await self._session.execute(stmt.order_by(PipelineTable.name))
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# ExecutionRepository
# ---------------------------------------------------------------------------


class ExecutionRepository:
    """Persistence of pipeline execution records."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def save(self, values: dict[str, Any]) -> PipelineExecutionTable:
        """Insert or overwrite the execution row identified by ``values['execution_id']``."""
        row = await self.get(values["execution_id"])
        if row is None:
            row = PipelineExecutionTable(**values)
            self._session.add(row)
        else:
            for column, value in values.items():
                setattr(row, column, value)
        await self._session.flush()
        return row

    async def get(self, execution_id: str) -> PipelineExecutionTable | None:
        stmt = select(PipelineExecutionTable).where(PipelineExecutionTable.execution_id == execution_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_pipeline(self, pipeline_id: str, limit: int = 50) -> list[PipelineExecutionTable]:
        stmt = (
            select(PipelineExecutionTable)
            .where(PipelineExecutionTable.pipeline_id == pipeline_id)
            .order_by(PipelineExecutionTable.started_at.desc())
            .limit(max(1, min(limit, 500)))
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
