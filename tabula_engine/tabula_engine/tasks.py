"""Background execution of long-running operations.

Pipeline runs and diffs can be submitted as ``asyncio`` tasks.  Each task
gets a :class:`CancellationToken` and a progress callback; the registry keeps
status, the latest progress, the result and a structured error so API
clients can poll them.
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

from tabula_engine.cancellation import CancellationToken, ProgressCallback
from tabula_engine.errors import ExecutionCancelledError, NotFoundError, TabulaError

logger = logging.getLogger(__name__)

TaskFactory = Callable[[CancellationToken, ProgressCallback], Awaitable[Any]]


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class TaskInfo(BaseModel):
    """Pollable state of one background task."""

    task_id: str
    kind: str
    status: TaskStatus = TaskStatus.PENDING
    progress: float = Field(default=0.0, ge=0.0, le=100.0)
    progress_detail: dict[str, Any] | None = None
    result: Any = None
    error: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    finished_at: datetime | None = None


class BackgroundTaskRegistry:
    """Runs submitted coroutines and tracks their state.

    Parameters
    ----------
    max_finished:
        Number of finished tasks retained for polling; older ones are
        forgotten first.
    """

    def __init__(self, max_finished: int = 1000) -> None:
        self._max_finished = max_finished
        self._tasks: dict[str, TaskInfo] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._handles: dict[str, asyncio.Task[None]] = {}

    def submit(self, kind: str, factory: TaskFactory) -> TaskInfo:
        """Start ``factory(cancel_token, on_progress)`` in the background."""
        task_id = uuid.uuid4().hex
        info = TaskInfo(task_id=task_id, kind=kind)
        token = CancellationToken()
        self._tasks[task_id] = info
        self._tokens[task_id] = token
        self._handles[task_id] = asyncio.create_task(self._run(info, token, factory), name=f"{kind}:{task_id}")
        logger.info("Submitted %s task %s", kind, task_id[:8])
        return info.model_copy()

    def get(self, task_id: str) -> TaskInfo:
        info = self._tasks.get(task_id)
        if info is None:
            raise NotFoundError(f"Task {task_id} not found", task_id=task_id)
        return info.model_copy()

    def cancel(self, task_id: str) -> TaskInfo:
        """Request cooperative cancellation; the task stops at its next check."""
        info = self.get(task_id)
        if not info.status.is_terminal:
            self._tokens[task_id].cancel("Cancelled by request")
            logger.info("Cancellation requested for task %s", task_id[:8])
        return info

    async def wait(self, task_id: str) -> TaskInfo:
        self.get(task_id)
        handle = self._handles.get(task_id)
        if handle is not None:
            await asyncio.shield(handle)
        return self.get(task_id)

    async def shutdown(self) -> None:
        """Cancel every unfinished task and wait for them to stop."""
        for task_id, info in self._tasks.items():
            if not info.status.is_terminal:
                self._tokens[task_id].cancel("Shutting down")
        pending = [h for h in self._handles.values() if not h.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _run(self, info: TaskInfo, token: CancellationToken, factory: TaskFactory) -> None:
        info.status = TaskStatus.RUNNING
        info.started_at = datetime.now(UTC)

        def _on_progress(*args: Any) -> None:
            if len(args) == 1 and isinstance(args[0], BaseModel):
                detail = args[0].model_dump(mode="json")
                info.progress_detail = detail
                if isinstance(detail.get("progress"), int | float):
                    info.progress = float(detail["progress"])
            elif len(args) == 2 and args[1]:
                processed, total = args
                info.progress = min(100.0, 100.0 * processed / total)
                info.progress_detail = {"processed": processed, "total": total}

        try:
            result = await factory(token, _on_progress)
        except ExecutionCancelledError as exc:
            info.status = TaskStatus.CANCELLED
            info.error = exc.to_dict()
        except TabulaError as exc:
            info.status = TaskStatus.FAILED
            info.error = exc.to_dict()
        except Exception as exc:
            logger.exception("Background task %s crashed", info.task_id[:8])
            info.status = TaskStatus.FAILED
            info.error = {"kind": "internal_error", "message": str(exc), "context": {}}
        else:
            info.status = TaskStatus.SUCCEEDED
            info.progress = 100.0
            info.result = result.model_dump(mode="json", by_alias=True) if isinstance(result, BaseModel) else result
        finally:
            info.finished_at = datetime.now(UTC)
            self._handles.pop(info.task_id, None)
            self._prune()
        logger.info("Task %s finished: %s", info.task_id[:8], info.status.value)

    def _prune(self) -> None:
        finished = [i for i in self._tasks.values() if i.status.is_terminal]
        excess = len(finished) - self._max_finished
        if excess <= 0:
            return
        for info in sorted(finished, key=lambda i: i.finished_at or i.created_at)[:excess]:
            self._tasks.pop(info.task_id, None)
            self._tokens.pop(info.task_id, None)
