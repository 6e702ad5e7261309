"""In-process event bus for engine flow events.

The pipeline executor and snapshot store emit events describing what
happened; subscribers such as the lineage tracker react to them.  Handler
errors are logged but never propagate to the emitter, so a failing
subscriber cannot fail a pipeline run that has already committed.

Usage::

    bus = EventBus()
    bus.register_handler(tracker.on_flow_event, event_type=EventType.EXECUTION_SUCCEEDED)
    await bus.emit(EventType.EXECUTION_SUCCEEDED, project_id="p1", data={...})
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------


class EventType(str, Enum):
    SNAPSHOT_CREATED = "snapshot.created"
    SNAPSHOT_DELETED = "snapshot.deleted"
    EXECUTION_STARTED = "execution.started"
    STEP_COMPLETED = "execution.step_completed"
    EXECUTION_SUCCEEDED = "execution.succeeded"
    EXECUTION_FAILED = "execution.failed"


class EventPayload(BaseModel):
    """Structured event payload dispatched to handlers."""

    event_type: EventType
    project_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    correlation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    data: dict[str, Any] = Field(default_factory=dict)


EventHandler = Callable[[EventPayload], Awaitable[None]]


# ---------------------------------------------------------------------------
# Event bus
# ---------------------------------------------------------------------------


class EventBus:
    """Async fan-out of events to registered handlers.

    Handlers for one event run concurrently via ``asyncio.gather``; each is
    wrapped so that a single failure does not affect the others.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType | None, list[EventHandler]] = {}

    def register_handler(
        self,
        handler: EventHandler,
        *,
        event_type: EventType | None = None,
    ) -> None:
        """Register *handler* for *event_type*, or for every event when ``None``."""
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(
            "Registered event handler %s for %s",
            getattr(handler, "__name__", repr(handler)),
            event_type.value if event_type else "ALL",
        )

    async def emit(
        self,
        event_type: EventType,
        *,
        project_id: str,
        data: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> None:
        """Emit an event to all matching handlers.

        Handler exceptions are logged, not raised.
        """
        payload = EventPayload(
            event_type=event_type,
            project_id=project_id,
            data=data or {},
            correlation_id=correlation_id or uuid.uuid4().hex,
        )

        handlers = list(self._handlers.get(event_type, []))
        handlers.extend(self._handlers.get(None, []))
        if not handlers:
            logger.debug("No handlers for event %s", event_type.value)
            return

        logger.debug(
            "Emitting %s for project=%s corr=%s (%d handler(s))",
            event_type.value,
            project_id,
            payload.correlation_id[:8],
            len(handlers),
        )

        async def _safe_call(handler: EventHandler) -> None:
            try:
                await handler(payload)
            except Exception:
                logger.exception(
                    "Handler %s failed for event %s (project=%s)",
                    getattr(handler, "__name__", repr(handler)),
                    event_type.value,
                    project_id,
                )

        await asyncio.gather(*[_safe_call(h) for h in handlers])

    @property
    def handler_count(self) -> int:
        return sum(len(v) for v in self._handlers.values())
