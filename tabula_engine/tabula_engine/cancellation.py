"""Cooperative cancellation and progress reporting for long-running work.

Long operations (diffs, pipeline runs) check a :class:`CancellationToken`
between units of work, never in the middle of transforming a record.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from typing import Any

from tabula_engine.errors import ExecutionCancelledError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[..., Any]


class CancellationToken:
    """Flag shared between a running operation and whoever may cancel it."""

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "Cancelled by request") -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason

    def raise_if_cancelled(self, **context: Any) -> None:
        """Raise :class:`ExecutionCancelledError` once cancellation was requested."""
        if self._cancelled:
            raise ExecutionCancelledError(self.reason or "Cancelled", **context)


async def notify_progress(callback: ProgressCallback | None, *args: Any) -> None:
    """Invoke a sync or async progress callback; failures are logged and ignored."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Progress callback %r failed", callback)
