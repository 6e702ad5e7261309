"""Shared fixtures for Tabula API tests.

The app runs against real engine services on a temporary SQLite file; the
``get_services`` dependency is overridden so no lifespan startup is needed.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from tabula_api.dependencies import Services, build_services, get_services
from tabula_api.main import create_app
from tabula_engine.config import load_settings
from tabula_engine.state.sqlite_adapter import create_local_tables, get_local_engine


@pytest_asyncio.fixture()
async def services(tmp_path: Path):
    """Engine services wired around a fresh SQLite state store."""
    engine = get_local_engine(tmp_path / "api.db")
    await create_local_tables(engine)
    settings = load_settings(
        diff_batch_size=2,
        pipeline_batch_size=2,
        retry_backoff_base=0.001,
        retry_max_delay=0.01,
    )
    built = build_services(engine, settings)
    yield built
    await built.tasks.shutdown()
    await engine.dispose()


@pytest.fixture()
def app(services: Services):
    """FastAPI app whose routes resolve to the test services."""
    application = create_app()
    application.dependency_overrides[get_services] = lambda: services
    yield application
    application.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def create_snapshot(client: AsyncClient):
    """Return a coroutine that POSTs a snapshot and yields the response body."""

    async def _create(data_source_id: str, records: list[dict[str, Any]]) -> dict[str, Any]:
        resp = await client.post("/api/v1/snapshots", json={"dataSourceId": data_source_id, "records": records})
        assert resp.status_code == 201, resp.text
        return resp.json()

    return _create
