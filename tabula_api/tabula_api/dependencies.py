"""FastAPI dependency injection for the engine services and settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncEngine

from tabula_api.config import APISettings, load_api_settings
from tabula_engine.config import Settings, load_settings
from tabula_engine.diff import SnapshotDiffer
from tabula_engine.events import EventBus, EventType
from tabula_engine.lineage import LineageTracker
from tabula_engine.pipeline import PipelineExecutor
from tabula_engine.retention import RetentionManager
from tabula_engine.snapshots import SnapshotStore
from tabula_engine.state.database import get_engine
from tabula_engine.tasks import BackgroundTaskRegistry

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Engine services
# ---------------------------------------------------------------------------


@dataclass
class Services:
    """Process-wide engine components shared by every request."""

    engine: AsyncEngine
    settings: Settings
    event_bus: EventBus
    store: SnapshotStore
    differ: SnapshotDiffer
    retention: RetentionManager
    executor: PipelineExecutor
    lineage: LineageTracker
    tasks: BackgroundTaskRegistry


def build_services(engine: AsyncEngine, settings: Settings) -> Services:
    """Wire the engine components together around one database engine."""
    event_bus = EventBus()
    store = SnapshotStore(engine, settings=settings, event_bus=event_bus)
    lineage = LineageTracker(engine)
    event_bus.register_handler(lineage.on_flow_event, event_type=EventType.EXECUTION_SUCCEEDED)
    return Services(
        engine=engine,
        settings=settings,
        event_bus=event_bus,
        store=store,
        differ=SnapshotDiffer(store),
        retention=RetentionManager(store),
        executor=PipelineExecutor(engine, store, settings=settings, event_bus=event_bus),
        lineage=lineage,
        tasks=BackgroundTaskRegistry(),
    )


_services: Services | None = None


def init_services(api_settings: APISettings) -> Services:
    """Create the global engine and services (call during startup)."""
    global _services  # noqa: PLW0603
    settings = load_settings(database_url=api_settings.database_url)
    engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    _services = build_services(engine, settings)
    return _services


async def dispose_services() -> None:
    """Stop background tasks and dispose the engine pool (call during shutdown)."""
    global _services  # noqa: PLW0603
    if _services is not None:
        await _services.tasks.shutdown()
        await _services.engine.dispose()
        _services = None


def get_services() -> Services:
    if _services is None:
        raise RuntimeError(
            "Services have not been initialised. Ensure init_services() is called during application startup."
        )
    return _services


ServicesDep = Annotated[Services, Depends(get_services)]


def get_store(services: ServicesDep) -> SnapshotStore:
    return services.store


def get_differ(services: ServicesDep) -> SnapshotDiffer:
    return services.differ


def get_retention(services: ServicesDep) -> RetentionManager:
    return services.retention


def get_executor(services: ServicesDep) -> PipelineExecutor:
    return services.executor


def get_lineage(services: ServicesDep) -> LineageTracker:
    return services.lineage


def get_tasks(services: ServicesDep) -> BackgroundTaskRegistry:
    return services.tasks


StoreDep = Annotated[SnapshotStore, Depends(get_store)]
DifferDep = Annotated[SnapshotDiffer, Depends(get_differ)]
RetentionDep = Annotated[RetentionManager, Depends(get_retention)]
ExecutorDep = Annotated[PipelineExecutor, Depends(get_executor)]
LineageDep = Annotated[LineageTracker, Depends(get_lineage)]
TasksDep = Annotated[BackgroundTaskRegistry, Depends(get_tasks)]
