"""Snapshot store: immutable, versioned copies of each data source.

Version assignment for one data source is serialised twice over: an
in-process ``asyncio.Lock`` per data source, and inside the database by the
unique ``(data_source_id, version)`` constraint plus the pointer-row update
in the same transaction.  A unique-constraint race surfaces as
:class:`ConcurrencyConflictError` and is retried with backoff.

Snapshots can be *pinned* by readers (diffs, pipeline runs).  Deleting a
pinned snapshot waits until every pin is released; while a delete is in
progress new pins on that snapshot fail with :class:`NotFoundError`.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from tabula_engine.config import Settings, load_settings
from tabula_engine.errors import (
    ConcurrencyConflictError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from tabula_engine.events import EventBus, EventType
from tabula_engine.models.schema import SchemaField
from tabula_engine.models.snapshot import (
    DataSource,
    Record,
    RecordPage,
    Snapshot,
    SnapshotFilter,
    SnapshotMetadata,
)
from tabula_engine.retry import RetryConfig, async_retry_with_backoff
from tabula_engine.snapshots.schema_inference import (
    compute_checksum,
    infer_schema,
    validate_records,
)
from tabula_engine.state.database import get_session
from tabula_engine.state.repository import (
    DataSourceRepository,
    SnapshotRecordRepository,
    SnapshotRepository,
)
from tabula_engine.state.tables import DataSourceTable, SnapshotTable

logger = logging.getLogger(__name__)

_RETRYABLE = (ConcurrencyConflictError, StorageError)

DeleteGuard = Callable[[SnapshotTable], bool]


def _as_utc(value: datetime) -> datetime:
    # SQLite returns naive datetimes for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def snapshot_from_row(row: SnapshotTable) -> Snapshot:
    metadata = dict(row.metadata_json or {})
    metadata.setdefault("checksum", row.checksum)
    return Snapshot(
        snapshot_id=row.snapshot_id,
        data_source_id=row.data_source_id,
        project_id=row.project_id,
        version=row.version,
        schema_fields=[SchemaField.model_validate(f) for f in row.schema_json or []],
        record_count=row.record_count,
        created_at=_as_utc(row.created_at),
        metadata=SnapshotMetadata.model_validate(metadata),
    )


def data_source_from_row(row: DataSourceTable) -> DataSource:
    return DataSource(
        data_source_id=row.data_source_id,
        project_id=row.project_id,
        name=row.name,
        current_version=row.current_version,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


class SnapshotStore:
    """Creates, reads and deletes snapshots and their record partitions.

    Parameters
    ----------
    engine:
        Async engine bound to the state store.
    settings:
        Engine settings; loaded from the environment when omitted.
    event_bus:
        Optional bus receiving ``snapshot.created`` / ``snapshot.deleted``.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        settings: Settings | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._engine = engine
        self._settings = settings or load_settings()
        self._retry = RetryConfig.from_settings(self._settings)
        self._event_bus = event_bus
        self._locks: dict[str, asyncio.Lock] = {}
        self._pins: dict[str, int] = {}
        self._deleting: set[str] = set()
        self._pin_condition = asyncio.Condition()

    @property
    def settings(self) -> Settings:
        return self._settings

    # ------------------------------------------------------------------
    # Critical sections
    # ------------------------------------------------------------------

    def _lock_for(self, data_source_id: str) -> asyncio.Lock:
        lock = self._locks.get(data_source_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[data_source_id] = lock
        return lock

    @asynccontextmanager
    async def data_source_lock(self, data_source_id: str) -> AsyncIterator[None]:
        """Hold the per-data-source critical section for version and pointer changes."""
        async with self._lock_for(data_source_id):
            yield

    async def _run_with_retry(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        return await async_retry_with_backoff(fn, self._retry, retryable_exceptions=_RETRYABLE)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_snapshot(
        self,
        data_source_id: str,
        records: Sequence[Mapping[str, Any]],
        schema: Sequence[SchemaField | Mapping[str, Any]] | None = None,
        metadata: SnapshotMetadata | Mapping[str, Any] | None = None,
        project_id: str = "default",
    ) -> Snapshot:
        """Persist *records* as the next version of *data_source_id*.

        Raises
        ------
        ValidationError
            If the records or the supplied schema are malformed.
        ValidationError
            Also when *data_source_id* is registered under another project.
        SchemaInferenceError
            If no schema is supplied and the records are empty or hold
            inconsistent column types.
        """
        if not data_source_id:
            raise ValidationError("data_source_id is required")

        validated = validate_records(records)
        if schema is None:
            schema_fields, _ = infer_schema(validated, strict=True)
        else:
            try:
                schema_fields = [SchemaField.model_validate(f) for f in schema]
            except ValueError as exc:
                raise ValidationError(f"Invalid schema: {exc}", data_source_id=data_source_id) from exc

        if isinstance(metadata, SnapshotMetadata):
            snapshot_metadata = metadata.model_copy()
        else:
            try:
                snapshot_metadata = SnapshotMetadata.model_validate(dict(metadata or {}))
            except ValueError as exc:
                raise ValidationError(f"Invalid metadata: {exc}", data_source_id=data_source_id) from exc
        snapshot_metadata.checksum = compute_checksum(validated)

        async with self._lock_for(data_source_id):
            snapshot: Snapshot = await self._run_with_retry(
                lambda: self._insert_snapshot(
                    data_source_id,
                    project_id,
                    validated,
                    schema_fields,
                    snapshot_metadata,
                )
            )

        logger.info(
            "Created snapshot %s for %s v%d (%d records)",
            snapshot.snapshot_id[:8],
            data_source_id,
            snapshot.version,
            snapshot.record_count,
        )
        if self._event_bus is not None:
            await self._event_bus.emit(
                EventType.SNAPSHOT_CREATED,
                project_id=project_id,
                data={
                    "snapshot_id": snapshot.snapshot_id,
                    "data_source_id": data_source_id,
                    "version": snapshot.version,
                    "record_count": snapshot.record_count,
                },
            )
        return snapshot

    async def _insert_snapshot(
        self,
        data_source_id: str,
        project_id: str,
        records: list[Record],
        schema_fields: list[SchemaField],
        metadata: SnapshotMetadata,
    ) -> Snapshot:
        snapshot_id = uuid.uuid4().hex
        created_at = datetime.now(UTC)
        batch_size = self._settings.record_insert_batch_size
        try:
            async with get_session(self._engine) as session:
                sources = DataSourceRepository(session)
                source_row = await sources.ensure(data_source_id, project_id=project_id)
                if source_row.project_id != project_id:
                    raise ValidationError(
                        f"Data source {data_source_id} belongs to project {source_row.project_id}",
                        data_source_id=data_source_id,
                        project_id=project_id,
                    )
                version = await sources.assign_version(source_row)
                await SnapshotRepository(session).create(
                    snapshot_id=snapshot_id,
                    data_source_id=data_source_id,
                    project_id=project_id,
                    version=version,
                    schema=[f.model_dump(mode="json") for f in schema_fields],
                    record_count=len(records),
                    checksum=metadata.checksum,
                    metadata=metadata.model_dump(mode="json"),
                    created_at=created_at,
                )
                record_repo = SnapshotRecordRepository(session)
                for start in range(0, len(records), batch_size):
                    await record_repo.insert_batch(snapshot_id, records[start : start + batch_size], start)
        except IntegrityError as exc:
            raise ConcurrencyConflictError(
                "Version assignment raced with another writer",
                data_source_id=data_source_id,
            ) from exc
        except SQLAlchemyError as exc:
            raise StorageError(
                f"Failed to persist snapshot: {exc}",
                data_source_id=data_source_id,
            ) from exc

        return Snapshot(
            snapshot_id=snapshot_id,
            data_source_id=data_source_id,
            project_id=project_id,
            version=version,
            schema_fields=schema_fields,
            record_count=len(records),
            created_at=created_at,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_data_source(self, data_source_id: str) -> DataSource | None:
        async with get_session(self._engine) as session:
            row = await DataSourceRepository(session).get(data_source_id)
            return data_source_from_row(row) if row is not None else None

    async def list_data_sources(self, project_id: str | None = None) -> list[DataSource]:
        async with get_session(self._engine) as session:
            rows = await DataSourceRepository(session).list_all(project_id)
            return [data_source_from_row(r) for r in rows]

    async def get_latest(self, data_source_id: str) -> Snapshot | None:
        """Return the snapshot the data source's latest-version pointer designates."""
        async with get_session(self._engine) as session:
            row = await SnapshotRepository(session).get_latest(data_source_id)
            return snapshot_from_row(row) if row is not None else None

    async def get_by_id(self, snapshot_id: str) -> Snapshot | None:
        async with get_session(self._engine) as session:
            row = await SnapshotRepository(session).get_by_id(snapshot_id)
            return snapshot_from_row(row) if row is not None else None

    async def require(self, snapshot_id: str) -> Snapshot:
        """Return the snapshot or raise :class:`NotFoundError`."""
        snapshot = await self.get_by_id(snapshot_id)
        if snapshot is None:
            raise NotFoundError(f"Snapshot {snapshot_id} not found", snapshot_id=snapshot_id)
        return snapshot

    async def list_by_data_source(
        self,
        data_source_id: str,
        filters: SnapshotFilter | None = None,
    ) -> list[Snapshot]:
        """Return snapshots of *data_source_id*, newest version first."""
        filters = filters or SnapshotFilter()
        async with get_session(self._engine) as session:
            rows = await SnapshotRepository(session).list_by_data_source(
                data_source_id,
                project_id=filters.project_id,
                min_version=filters.min_version,
                max_version=filters.max_version,
                created_after=filters.created_after,
                created_before=filters.created_before,
                limit=filters.limit,
                offset=filters.offset,
            )
            return [snapshot_from_row(r) for r in rows]

    async def list_snapshots(
        self,
        project_id: str | None = None,
        data_source_id: str | None = None,
    ) -> list[Snapshot]:
        async with get_session(self._engine) as session:
            rows = await SnapshotRepository(session).list_all(project_id, data_source_id)
            return [snapshot_from_row(r) for r in rows]

    async def load_records(
        self,
        snapshot_id: str,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Record]:
        """Read records of one snapshot in their original order."""
        if offset < 0 or (limit is not None and limit < 0):
            raise ValidationError("limit and offset must be non-negative", limit=limit, offset=offset)
        async with get_session(self._engine) as session:
            if await SnapshotRepository(session).get_by_id(snapshot_id) is None:
                raise NotFoundError(f"Snapshot {snapshot_id} not found", snapshot_id=snapshot_id)
            return await SnapshotRecordRepository(session).fetch(snapshot_id, limit=limit, offset=offset)

    async def iter_record_batches(
        self,
        snapshot_id: str,
        batch_size: int | None = None,
    ) -> AsyncIterator[list[Record]]:
        """Yield the snapshot's records in batches of *batch_size*."""
        size = batch_size or self._settings.diff_batch_size
        offset = 0
        while True:
            batch = await self.load_records(snapshot_id, limit=size, offset=offset)
            if not batch:
                return
            yield batch
            if len(batch) < size:
                return
            offset += size

    async def get_record_page(
        self,
        data_source_id: str,
        snapshot_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> RecordPage:
        """Return one page of records bound to a specific snapshot.

        When *snapshot_id* is omitted the latest snapshot is used.
        """
        if snapshot_id is None:
            snapshot = await self.get_latest(data_source_id)
            if snapshot is None:
                raise NotFoundError(
                    f"Data source {data_source_id} has no snapshots",
                    data_source_id=data_source_id,
                )
        else:
            snapshot = await self.require(snapshot_id)
            if snapshot.data_source_id != data_source_id:
                raise NotFoundError(
                    f"Snapshot {snapshot_id} does not belong to data source {data_source_id}",
                    data_source_id=data_source_id,
                    snapshot_id=snapshot_id,
                )
        records = await self.load_records(snapshot.snapshot_id, limit=limit, offset=offset)
        return RecordPage(
            snapshot=snapshot,
            records=records,
            total=snapshot.record_count,
            limit=limit,
            offset=offset,
        )

    # ------------------------------------------------------------------
    # Pins
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def pin(self, *snapshot_ids: str) -> AsyncIterator[list[Snapshot]]:
        """Hold a reference on each snapshot so deletes wait until release.

        Yields the pinned snapshots in argument order.

        Raises
        ------
        NotFoundError
            If any snapshot does not exist or is being deleted.
        """
        unique_ids = list(dict.fromkeys(snapshot_ids))
        async with self._pin_condition:
            snapshots: dict[str, Snapshot] = {}
            for snapshot_id in unique_ids:
                snapshot = None if snapshot_id in self._deleting else await self.get_by_id(snapshot_id)
                if snapshot is None:
                    raise NotFoundError(f"Snapshot {snapshot_id} not found", snapshot_id=snapshot_id)
                snapshots[snapshot_id] = snapshot
            for snapshot_id in unique_ids:
                self._pins[snapshot_id] = self._pins.get(snapshot_id, 0) + 1
        try:
            yield [snapshots[s] for s in snapshot_ids]
        finally:
            async with self._pin_condition:
                for snapshot_id in unique_ids:
                    remaining = self._pins.get(snapshot_id, 0) - 1
                    if remaining > 0:
                        self._pins[snapshot_id] = remaining
                    else:
                        self._pins.pop(snapshot_id, None)
                self._pin_condition.notify_all()

    def pin_count(self, snapshot_id: str) -> int:
        return self._pins.get(snapshot_id, 0)

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_snapshot(self, snapshot_id: str) -> Snapshot:
        """Delete a snapshot and its records, then recompute the latest pointer.

        Waits while the snapshot is pinned.

        Raises
        ------
        NotFoundError
            If the snapshot does not exist.
        """
        deleted = await self.delete_if(snapshot_id)
        if deleted is None:
            raise NotFoundError(f"Snapshot {snapshot_id} not found", snapshot_id=snapshot_id)
        return deleted

    async def delete_if(
        self,
        snapshot_id: str,
        guard: DeleteGuard | None = None,
    ) -> Snapshot | None:
        """Delete *snapshot_id* when it still exists and *guard* accepts its row.

        *guard* is evaluated inside the data source's critical section
        immediately before the delete.  Returns the deleted snapshot, or
        ``None`` when the snapshot is absent or the guard rejected it.
        """
        async with self._pin_condition:
            await self._pin_condition.wait_for(
                lambda: self._pins.get(snapshot_id, 0) == 0 and snapshot_id not in self._deleting
            )
            self._deleting.add(snapshot_id)

        try:
            current = await self.get_by_id(snapshot_id)
            if current is None:
                return None
            async with self._lock_for(current.data_source_id):
                deleted: Snapshot | None = await self._run_with_retry(
                    lambda: self._delete_row(snapshot_id, guard)
                )
        finally:
            async with self._pin_condition:
                self._deleting.discard(snapshot_id)
                self._pin_condition.notify_all()

        if deleted is not None:
            logger.info(
                "Deleted snapshot %s of %s v%d",
                snapshot_id[:8],
                deleted.data_source_id,
                deleted.version,
            )
            if self._event_bus is not None:
                await self._event_bus.emit(
                    EventType.SNAPSHOT_DELETED,
                    project_id=deleted.project_id,
                    data={
                        "snapshot_id": snapshot_id,
                        "data_source_id": deleted.data_source_id,
                        "version": deleted.version,
                    },
                )
        return deleted

    async def _delete_row(self, snapshot_id: str, guard: DeleteGuard | None) -> Snapshot | None:
        try:
            async with get_session(self._engine) as session:
                snapshots = SnapshotRepository(session)
                row = await snapshots.get_by_id(snapshot_id)
                if row is None or (guard is not None and not guard(row)):
                    return None
                snapshot = snapshot_from_row(row)
                await snapshots.delete(snapshot_id)
                await DataSourceRepository(session).recompute_current_version(snapshot.data_source_id)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to delete snapshot: {exc}", snapshot_id=snapshot_id) from exc
        return snapshot
