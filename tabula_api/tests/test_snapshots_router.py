"""Tests for the snapshot and data source routers."""

from __future__ import annotations

import asyncio
import csv
import io

import pytest
from httpx import AsyncClient

_V1 = [{"id": 1, "name": "A"}, {"id": 2, "name": "B"}]
_V2 = [{"id": 1, "name": "A2"}, {"id": 3, "name": "C"}]


class TestCreateAndRead:
    @pytest.mark.asyncio
    async def test_create_returns_camel_case(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/v1/snapshots",
            json={"dataSourceId": "people", "records": _V1, "metadata": {"source": "upload"}},
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["version"] == 1
        assert body["recordCount"] == 2
        assert {"id", "createdAt"} <= body.keys()

    @pytest.mark.asyncio
    async def test_versions_increase(self, create_snapshot) -> None:
        first = await create_snapshot("people", _V1)
        second = await create_snapshot("people", _V2)
        assert (first["version"], second["version"]) == (1, 2)

    @pytest.mark.asyncio
    async def test_get_and_list(self, client: AsyncClient, create_snapshot) -> None:
        created = await create_snapshot("people", _V1)
        await create_snapshot("people", _V2)
        await create_snapshot("other", [{"x": 1}])

        resp = await client.get(f"/api/v1/snapshots/{created['id']}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["dataSourceId"] == "people"
        assert [f["name"] for f in body["schema"]] == ["id", "name"]

        listed = (await client.get("/api/v1/snapshots", params={"dataSourceId": "people"})).json()
        assert [s["version"] for s in listed] == [2, 1]

    @pytest.mark.asyncio
    async def test_invalid_records(self, client: AsyncClient) -> None:
        resp = await client.post("/api/v1/snapshots", json={"dataSourceId": "people", "records": [1, 2]})
        assert resp.status_code == 400
        assert resp.json()["kind"] == "validation_error"

    @pytest.mark.asyncio
    async def test_missing_snapshot(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/snapshots/nope")
        assert resp.status_code == 404
        assert resp.json()["kind"] == "not_found_error"

    @pytest.mark.asyncio
    async def test_delete(self, client: AsyncClient, create_snapshot) -> None:
        first = await create_snapshot("people", _V1)
        second = await create_snapshot("people", _V2)

        resp = await client.delete(f"/api/v1/snapshots/{second['id']}")
        assert resp.json() == {"success": True}
        assert (await client.get(f"/api/v1/snapshots/{second['id']}")).status_code == 404

        source = (await client.get("/api/v1/data-sources/people")).json()
        assert source["currentVersion"] == 1
        assert (await client.get(f"/api/v1/snapshots/{first['id']}")).status_code == 200


class TestCompare:
    @pytest.mark.asyncio
    async def test_json(self, client: AsyncClient, create_snapshot) -> None:
        a = await create_snapshot("people", _V1)
        b = await create_snapshot("people", _V2)

        resp = await client.post(
            "/api/v1/snapshots/compare",
            json={"fromSnapshotId": a["id"], "toSnapshotId": b["id"], "comparisonKey": "id"},
        )

        assert resp.status_code == 200
        comparison = resp.json()["comparison"]
        assert comparison["summary"]["changePercentage"] == 150.0
        assert comparison["added"] == [{"id": 3, "name": "C"}]
        assert comparison["removed"] == [{"id": 2, "name": "B"}]
        change = comparison["modified"][0]["changes"][0]
        assert (change["field"], change["oldValue"], change["newValue"]) == ("name", "A", "A2")
        assert comparison["statistics"]["largestChange"]["key"] == 1

    @pytest.mark.asyncio
    async def test_csv_export(self, client: AsyncClient, create_snapshot) -> None:
        a = await create_snapshot("people", _V1)
        b = await create_snapshot("people", _V2)

        resp = await client.post(
            "/api/v1/snapshots/compare",
            params={"format": "csv"},
            json={"fromSnapshotId": a["id"], "toSnapshotId": b["id"], "comparisonKey": ["id"]},
        )

        assert resp.headers["content-type"].startswith("text/csv")
        rows = list(csv.reader(io.StringIO(resp.text)))
        assert ["1", "modified", "name", "A", "A2"] in rows

    @pytest.mark.asyncio
    async def test_text_export(self, client: AsyncClient, create_snapshot) -> None:
        a = await create_snapshot("people", _V1)
        b = await create_snapshot("people", _V2)
        resp = await client.post(
            "/api/v1/snapshots/compare",
            params={"format": "text"},
            json={"fromSnapshotId": a["id"], "toSnapshotId": b["id"], "comparisonKey": ["id"]},
        )
        assert "SNAPSHOT COMPARISON: v1 -> v2" in resp.text

    @pytest.mark.asyncio
    async def test_missing_key_field(self, client: AsyncClient, create_snapshot) -> None:
        a = await create_snapshot("people", _V1)
        resp = await client.post(
            "/api/v1/snapshots/compare",
            json={"fromSnapshotId": a["id"], "toSnapshotId": a["id"], "comparisonKey": ["code"]},
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_duplicate_keys_conflict(self, client: AsyncClient, create_snapshot) -> None:
        a = await create_snapshot("people", [{"id": 1}, {"id": 1}])
        b = await create_snapshot("people", _V1)
        resp = await client.post(
            "/api/v1/snapshots/compare",
            json={"fromSnapshotId": a["id"], "toSnapshotId": b["id"], "comparisonKey": ["id"]},
        )
        assert resp.status_code == 409
        assert resp.json()["kind"] == "ambiguous_key_error"

    @pytest.mark.asyncio
    async def test_background(self, client: AsyncClient, create_snapshot) -> None:
        a = await create_snapshot("people", _V1)
        b = await create_snapshot("people", _V2)

        resp = await client.post(
            "/api/v1/snapshots/compare",
            params={"background": "true"},
            json={"fromSnapshotId": a["id"], "toSnapshotId": b["id"], "comparisonKey": ["id"]},
        )
        assert resp.status_code == 202
        task_id = resp.json()["taskId"]

        for _ in range(200):
            task = (await client.get(f"/api/v1/tasks/{task_id}")).json()
            if task["status"] in ("succeeded", "failed", "cancelled"):
                break
            await asyncio.sleep(0.01)

        assert task["status"] == "succeeded"
        assert task["progress"] == 100.0
        assert task["result"]["summary"]["added"] == 1


class TestCleanup:
    @pytest.mark.asyncio
    async def test_keep_two(self, client: AsyncClient, create_snapshot) -> None:
        for i in range(5):
            await create_snapshot("people", [{"id": i}])

        resp = await client.post("/api/v1/snapshots/cleanup", json={"dataSourceId": "people", "keep": 2})

        assert resp.status_code == 200
        body = resp.json()
        assert body["deletedCount"] == 3
        assert body["keptVersions"] == [4, 5]

    @pytest.mark.asyncio
    async def test_other_project_is_rejected(self, client: AsyncClient) -> None:
        for i in range(3):
            resp = await client.post(
                "/api/v1/snapshots",
                json={"dataSourceId": "ds", "records": [{"id": i}], "projectId": "alpha"},
            )
            assert resp.status_code == 201

        resp = await client.post(
            "/api/v1/snapshots/cleanup",
            json={"projectId": "beta", "dataSourceId": "ds", "keep": 0},
        )
        assert resp.status_code == 404

        appended = await client.post(
            "/api/v1/snapshots",
            json={"dataSourceId": "ds", "records": [{"id": 9}], "projectId": "beta"},
        )
        assert appended.status_code == 400

        listed = (await client.get("/api/v1/snapshots", params={"projectId": "alpha"})).json()
        assert [s["version"] for s in listed] == [3, 2, 1]

    @pytest.mark.asyncio
    async def test_negative_keep(self, client: AsyncClient) -> None:
        resp = await client.post("/api/v1/snapshots/cleanup", json={"dataSourceId": "people", "keep": -1})
        assert resp.status_code == 400


class TestDataSources:
    @pytest.mark.asyncio
    async def test_list(self, client: AsyncClient, create_snapshot) -> None:
        await create_snapshot("b", [{"x": 1}])
        await create_snapshot("a", [{"x": 1}])
        body = (await client.get("/api/v1/data-sources")).json()
        assert sorted(s["id"] for s in body) == ["a", "b"]
        assert all(s["currentVersion"] == 1 for s in body)

    @pytest.mark.asyncio
    async def test_paged_data(self, client: AsyncClient, create_snapshot) -> None:
        await create_snapshot("people", [{"id": i} for i in range(5)])

        page = (await client.get("/api/v1/data-sources/people/data", params={"limit": 2, "offset": 2})).json()

        assert page["records"] == [{"id": 2}, {"id": 3}]
        assert page["total"] == 5
        assert page["hasMore"] is True
        assert page["version"] == 1

    @pytest.mark.asyncio
    async def test_paged_data_of_older_version(self, client: AsyncClient, create_snapshot) -> None:
        first = await create_snapshot("people", [{"id": 1}])
        await create_snapshot("people", [{"id": 2}])
        page = (await client.get("/api/v1/data-sources/people/data", params={"versionId": first["id"]})).json()
        assert page["records"] == [{"id": 1}]
        assert page["hasMore"] is False

    @pytest.mark.asyncio
    async def test_unknown(self, client: AsyncClient) -> None:
        assert (await client.get("/api/v1/data-sources/missing")).status_code == 404
        assert (await client.get("/api/v1/data-sources/missing/data")).status_code == 404
