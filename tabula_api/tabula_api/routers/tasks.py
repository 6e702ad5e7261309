"""Background task endpoints: poll status and request cancellation."""

from __future__ import annotations

from fastapi import APIRouter

from tabula_api.dependencies import TasksDep
from tabula_api.schemas import TaskResponse

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.get("/{task_id}", response_model=TaskResponse)
async def get_task(task_id: str, tasks: TasksDep) -> TaskResponse:
    return TaskResponse.model_validate(tasks.get(task_id).model_dump(mode="json"))


@router.post("/{task_id}/cancel", response_model=TaskResponse)
async def cancel_task(task_id: str, tasks: TasksDep) -> TaskResponse:
    """Request cooperative cancellation; the task stops at its next batch boundary."""
    return TaskResponse.model_validate(tasks.cancel(task_id).model_dump(mode="json"))
