"""Unit tests for the snapshot store.

Covers:
- version assignment (sequential, gap-free, never reused after a delete)
- concurrent creates on the same data source
- the latest-version pointer across creates and deletes
- record reads, pagination and batching
- pins blocking deletes
"""

from __future__ import annotations

import asyncio

import pytest

from tabula_engine.errors import NotFoundError, SchemaInferenceError, ValidationError
from tabula_engine.events import EventPayload, EventType
from tabula_engine.models.schema import FieldType, SchemaField
from tabula_engine.models.snapshot import SnapshotFilter
from tabula_engine.snapshots.schema_inference import compute_checksum
from tabula_engine.snapshots.store import SnapshotStore

_PEOPLE = [{"id": 1, "name": "A"}, {"id": 2, "name": "B"}, {"id": 3, "name": "C"}]


class TestCreateSnapshot:
    @pytest.mark.asyncio
    async def test_first_version_is_one(self, store: SnapshotStore) -> None:
        snapshot = await store.create_snapshot("people", _PEOPLE)
        assert snapshot.version == 1
        assert snapshot.record_count == 3
        assert [f.name for f in snapshot.schema_fields] == ["id", "name"]
        assert snapshot.metadata.checksum == compute_checksum(_PEOPLE)

    @pytest.mark.asyncio
    async def test_versions_are_sequential(self, store: SnapshotStore) -> None:
        versions = [(await store.create_snapshot("people", _PEOPLE)).version for _ in range(3)]
        assert versions == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_versions_are_per_data_source(self, store: SnapshotStore) -> None:
        await store.create_snapshot("people", _PEOPLE)
        other = await store.create_snapshot("orders", [{"order": 1}])
        assert other.version == 1

    @pytest.mark.asyncio
    async def test_records_round_trip_in_order(self, store: SnapshotStore) -> None:
        records = [{"z": 1, "a": {"nested": [1, 2]}}, {"z": 2, "a": None}]
        snapshot = await store.create_snapshot("ds", records)
        loaded = await store.load_records(snapshot.snapshot_id)
        assert loaded == records
        assert list(loaded[0].keys()) == ["z", "a"]

    @pytest.mark.asyncio
    async def test_explicit_schema_allows_empty_records(self, store: SnapshotStore) -> None:
        schema = [SchemaField(name="id", type=FieldType.NUMBER)]
        snapshot = await store.create_snapshot("empty", [], schema=schema)
        assert snapshot.record_count == 0
        assert snapshot.schema_fields == schema

    @pytest.mark.asyncio
    async def test_empty_records_without_schema_raise(self, store: SnapshotStore) -> None:
        with pytest.raises(SchemaInferenceError):
            await store.create_snapshot("empty", [])
        assert await store.get_data_source("empty") is None

    @pytest.mark.asyncio
    async def test_inconsistent_types_raise(self, store: SnapshotStore) -> None:
        with pytest.raises(SchemaInferenceError):
            await store.create_snapshot("bad", [{"v": 1}, {"v": "x"}])

    @pytest.mark.asyncio
    async def test_invalid_schema_raises_validation_error(self, store: SnapshotStore) -> None:
        with pytest.raises(ValidationError):
            await store.create_snapshot("bad", [{"v": 1}], schema=[{"name": "v", "type": "decimal"}])

    @pytest.mark.asyncio
    async def test_metadata_is_preserved(self, store: SnapshotStore) -> None:
        snapshot = await store.create_snapshot("ds", _PEOPLE, metadata={"file_type": "csv"})
        fetched = await store.require(snapshot.snapshot_id)
        assert fetched.metadata.file_type == "csv"
        assert fetched.metadata.checksum == snapshot.metadata.checksum

    @pytest.mark.asyncio
    async def test_emits_created_event(self, store: SnapshotStore, captured_events: list[EventPayload]) -> None:
        snapshot = await store.create_snapshot("ds", _PEOPLE, project_id="proj")
        created = [e for e in captured_events if e.event_type is EventType.SNAPSHOT_CREATED]
        assert len(created) == 1
        assert created[0].project_id == "proj"
        assert created[0].data["snapshot_id"] == snapshot.snapshot_id

    @pytest.mark.asyncio
    async def test_other_project_cannot_append(self, store: SnapshotStore) -> None:
        await store.create_snapshot("ds", _PEOPLE, project_id="alpha")

        with pytest.raises(ValidationError, match="belongs to project alpha"):
            await store.create_snapshot("ds", _PEOPLE, project_id="beta")

        source = await store.get_data_source("ds")
        assert source is not None
        assert source.current_version == 1
        assert [s.version for s in await store.list_by_data_source("ds")] == [1]


class TestConcurrentCreates:
    @pytest.mark.asyncio
    async def test_concurrent_creates_get_distinct_versions(self, store: SnapshotStore) -> None:
        snapshots = await asyncio.gather(*(store.create_snapshot("ds", [{"i": i}]) for i in range(8)))
        assert sorted(s.version for s in snapshots) == list(range(1, 9))
        source = await store.get_data_source("ds")
        assert source is not None
        assert source.current_version == 8

    @pytest.mark.asyncio
    async def test_concurrent_creates_across_data_sources(self, store: SnapshotStore) -> None:
        snapshots = await asyncio.gather(
            *(store.create_snapshot(f"ds-{i % 2}", [{"i": i}]) for i in range(6))
        )
        by_source: dict[str, list[int]] = {}
        for snapshot in snapshots:
            by_source.setdefault(snapshot.data_source_id, []).append(snapshot.version)
        assert {k: sorted(v) for k, v in by_source.items()} == {"ds-0": [1, 2, 3], "ds-1": [1, 2, 3]}


class TestLatestPointer:
    @pytest.mark.asyncio
    async def test_latest_follows_creates(self, store: SnapshotStore) -> None:
        await store.create_snapshot("ds", _PEOPLE)
        second = await store.create_snapshot("ds", _PEOPLE[:1])
        latest = await store.get_latest("ds")
        assert latest is not None
        assert latest.snapshot_id == second.snapshot_id

    @pytest.mark.asyncio
    async def test_deleting_latest_moves_pointer_back(self, store: SnapshotStore) -> None:
        first = await store.create_snapshot("ds", _PEOPLE)
        second = await store.create_snapshot("ds", _PEOPLE)
        await store.delete_snapshot(second.snapshot_id)
        latest = await store.get_latest("ds")
        assert latest is not None
        assert latest.snapshot_id == first.snapshot_id

    @pytest.mark.asyncio
    async def test_deleted_versions_are_not_reused(self, store: SnapshotStore) -> None:
        await store.create_snapshot("ds", _PEOPLE)
        second = await store.create_snapshot("ds", _PEOPLE)
        await store.delete_snapshot(second.snapshot_id)
        third = await store.create_snapshot("ds", _PEOPLE)
        assert third.version == 3

    @pytest.mark.asyncio
    async def test_deleting_all_snapshots_resets_pointer(self, store: SnapshotStore) -> None:
        only = await store.create_snapshot("ds", _PEOPLE)
        await store.delete_snapshot(only.snapshot_id)
        assert await store.get_latest("ds") is None
        source = await store.get_data_source("ds")
        assert source is not None
        assert source.current_version == 0

    @pytest.mark.asyncio
    async def test_unknown_data_source(self, store: SnapshotStore) -> None:
        assert await store.get_latest("missing") is None


class TestReads:
    @pytest.mark.asyncio
    async def test_require_missing_raises(self, store: SnapshotStore) -> None:
        with pytest.raises(NotFoundError):
            await store.require("nope")

    @pytest.mark.asyncio
    async def test_load_records_pagination(self, store: SnapshotStore) -> None:
        snapshot = await store.create_snapshot("ds", _PEOPLE)
        page = await store.load_records(snapshot.snapshot_id, limit=2, offset=1)
        assert [r["id"] for r in page] == [2, 3]

    @pytest.mark.asyncio
    async def test_load_records_negative_offset(self, store: SnapshotStore) -> None:
        snapshot = await store.create_snapshot("ds", _PEOPLE)
        with pytest.raises(ValidationError):
            await store.load_records(snapshot.snapshot_id, offset=-1)

    @pytest.mark.asyncio
    async def test_iter_record_batches(self, store: SnapshotStore) -> None:
        records = [{"i": i} for i in range(5)]
        snapshot = await store.create_snapshot("ds", records)
        batches = [batch async for batch in store.iter_record_batches(snapshot.snapshot_id, 2)]
        assert [len(b) for b in batches] == [2, 2, 1]

    @pytest.mark.asyncio
    async def test_list_by_data_source_newest_first(self, store: SnapshotStore) -> None:
        for _ in range(4):
            await store.create_snapshot("ds", _PEOPLE)
        snapshots = await store.list_by_data_source("ds")
        assert [s.version for s in snapshots] == [4, 3, 2, 1]
        limited = await store.list_by_data_source("ds", SnapshotFilter(min_version=2, limit=2))
        assert [s.version for s in limited] == [4, 3]

    @pytest.mark.asyncio
    async def test_record_page_defaults_to_latest(self, store: SnapshotStore) -> None:
        await store.create_snapshot("ds", _PEOPLE)
        latest = await store.create_snapshot("ds", _PEOPLE[:2])
        page = await store.get_record_page("ds", limit=10)
        assert page.snapshot.snapshot_id == latest.snapshot_id
        assert page.total == 2

    @pytest.mark.asyncio
    async def test_record_page_rejects_foreign_snapshot(self, store: SnapshotStore) -> None:
        other = await store.create_snapshot("other", _PEOPLE)
        await store.create_snapshot("ds", _PEOPLE)
        with pytest.raises(NotFoundError):
            await store.get_record_page("ds", snapshot_id=other.snapshot_id)

    @pytest.mark.asyncio
    async def test_list_data_sources_by_project(self, store: SnapshotStore) -> None:
        await store.create_snapshot("a", _PEOPLE, project_id="p1")
        await store.create_snapshot("b", _PEOPLE, project_id="p2")
        sources = await store.list_data_sources("p1")
        assert [s.data_source_id for s in sources] == ["a"]


class TestPinsAndDeletes:
    @pytest.mark.asyncio
    async def test_delete_removes_records(self, store: SnapshotStore) -> None:
        snapshot = await store.create_snapshot("ds", _PEOPLE)
        await store.delete_snapshot(snapshot.snapshot_id)
        assert await store.get_by_id(snapshot.snapshot_id) is None
        with pytest.raises(NotFoundError):
            await store.load_records(snapshot.snapshot_id)

    @pytest.mark.asyncio
    async def test_delete_missing_raises(self, store: SnapshotStore) -> None:
        with pytest.raises(NotFoundError):
            await store.delete_snapshot("nope")

    @pytest.mark.asyncio
    async def test_delete_waits_for_pin_release(self, store: SnapshotStore) -> None:
        snapshot = await store.create_snapshot("ds", _PEOPLE)

        async with store.pin(snapshot.snapshot_id) as (pinned,):
            assert pinned.snapshot_id == snapshot.snapshot_id
            assert store.pin_count(snapshot.snapshot_id) == 1
            delete_task = asyncio.create_task(store.delete_snapshot(snapshot.snapshot_id))
            await asyncio.sleep(0.05)
            assert not delete_task.done()
            assert await store.load_records(snapshot.snapshot_id) == _PEOPLE

        await asyncio.wait_for(delete_task, timeout=5)
        assert store.pin_count(snapshot.snapshot_id) == 0
        assert await store.get_by_id(snapshot.snapshot_id) is None

    @pytest.mark.asyncio
    async def test_pin_missing_snapshot_raises(self, store: SnapshotStore) -> None:
        with pytest.raises(NotFoundError):
            async with store.pin("nope"):
                pass

    @pytest.mark.asyncio
    async def test_pin_same_snapshot_twice(self, store: SnapshotStore) -> None:
        snapshot = await store.create_snapshot("ds", _PEOPLE)
        async with store.pin(snapshot.snapshot_id, snapshot.snapshot_id) as pinned:
            assert len(pinned) == 2
            assert store.pin_count(snapshot.snapshot_id) == 1
        assert store.pin_count(snapshot.snapshot_id) == 0

    @pytest.mark.asyncio
    async def test_delete_if_guard_rejects(self, store: SnapshotStore) -> None:
        snapshot = await store.create_snapshot("ds", _PEOPLE)
        assert await store.delete_if(snapshot.snapshot_id, guard=lambda row: False) is None
        assert await store.get_by_id(snapshot.snapshot_id) is not None

    @pytest.mark.asyncio
    async def test_emits_deleted_event(self, store: SnapshotStore, captured_events: list[EventPayload]) -> None:
        snapshot = await store.create_snapshot("ds", _PEOPLE)
        await store.delete_snapshot(snapshot.snapshot_id)
        deleted = [e for e in captured_events if e.event_type is EventType.SNAPSHOT_DELETED]
        assert deleted[0].data["version"] == 1
