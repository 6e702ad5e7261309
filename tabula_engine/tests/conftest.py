"""Shared fixtures for engine tests.

Every test gets its own SQLite file under ``tmp_path`` so concurrent
sessions use separate connections, and small batch sizes so batching and
cancellation paths are exercised with a handful of records.
"""

from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio

from tabula_engine.config import Settings, load_settings
from tabula_engine.events import EventBus, EventPayload
from tabula_engine.snapshots.store import SnapshotStore
from tabula_engine.state.sqlite_adapter import create_local_tables, get_local_engine


@pytest.fixture()
def settings() -> Settings:
    return load_settings(
        diff_batch_size=2,
        pipeline_batch_size=2,
        record_insert_batch_size=2,
        max_retries=3,
        retry_backoff_base=0.001,
        retry_max_delay=0.01,
        script_timeout_seconds=20.0,
    )


@pytest_asyncio.fixture()
async def engine(tmp_path: Path):
    """Async engine on a fresh SQLite file with all tables created."""
    eng = get_local_engine(tmp_path / "state.db")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture()
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def captured_events(event_bus: EventBus) -> list[EventPayload]:
    """List that receives every event emitted on ``event_bus``."""
    events: list[EventPayload] = []

    async def _capture(payload: EventPayload) -> None:
        events.append(payload)

    event_bus.register_handler(_capture)
    return events


@pytest.fixture()
def store(engine, settings: Settings, event_bus: EventBus) -> SnapshotStore:
    return SnapshotStore(engine, settings=settings, event_bus=event_bus)
