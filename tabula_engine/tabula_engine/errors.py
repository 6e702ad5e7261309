"""Error taxonomy shared by every Tabula engine component.

Each error carries a stable ``kind`` string, a human-readable message and a
``context`` dictionary with the identifiers needed to diagnose the failure.
:meth:`TabulaError.to_dict` renders the structured ``{kind, message,
context}`` object returned by the API layer.
"""

from __future__ import annotations

from typing import Any


class TabulaError(Exception):
    """Base class for all engine errors."""

    kind: str = "tabula_error"

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context: dict[str, Any] = context
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Return the structured ``{kind, message, context}`` representation."""
        return {"kind": self.kind, "message": self.message, "context": dict(self.context)}


class ValidationError(TabulaError):
    """Malformed request, missing key or invalid configuration."""

    kind = "validation_error"


class SchemaInferenceError(TabulaError):
    """Records are empty or a column holds inconsistent value types."""

    kind = "schema_inference_error"


class AmbiguousKeyError(TabulaError):
    """A comparison or join key is not unique within a dataset.

    Attributes
    ----------
    duplicate_keys:
        The normalised key values that occur more than once.
    """

    kind = "ambiguous_key_error"

    def __init__(self, message: str, duplicate_keys: list[Any] | None = None, **context: Any) -> None:
        self.duplicate_keys = list(duplicate_keys or [])
        super().__init__(message, duplicate_keys=self.duplicate_keys[:50], **context)


class ConcurrencyConflictError(TabulaError):
    """A version race or a conflicting concurrent run was detected."""

    kind = "concurrency_conflict_error"


class StepExecutionError(TabulaError):
    """A pipeline step failed; the whole run is aborted.

    Attributes
    ----------
    step_index:
        Zero-based index of the failing step.
    step_type:
        Variant tag of the failing step (``"filter"``, ``"join"``, ...).
    cause:
        The underlying exception.
    """

    kind = "step_execution_error"

    def __init__(self, step_index: int, step_type: str, cause: BaseException) -> None:
        self.step_index = step_index
        self.step_type = step_type
        self.cause = cause
        cause_payload: dict[str, Any]
        if isinstance(cause, TabulaError):
            cause_payload = cause.to_dict()
        else:
            cause_payload = {"kind": type(cause).__name__, "message": str(cause), "context": {}}
        super().__init__(
            f"Step {step_index} ({step_type}) failed: {cause}",
            step_index=step_index,
            step_type=step_type,
            cause=cause_payload,
        )


class CycleError(TabulaError):
    """Inserting a lineage edge would create a cycle."""

    kind = "cycle_error"

    def __init__(self, source_node_id: str, target_node_id: str, path: list[str] | None = None) -> None:
        self.source_node_id = source_node_id
        self.target_node_id = target_node_id
        self.path = list(path or [])
        formatted = " -> ".join(self.path) if self.path else target_node_id
        super().__init__(
            f"Edge {source_node_id} -> {target_node_id} would create a cycle ({formatted})",
            source_node_id=source_node_id,
            target_node_id=target_node_id,
            path=self.path,
        )


class NotFoundError(TabulaError):
    """A snapshot, data source, pipeline or task does not exist."""

    kind = "not_found_error"


class StorageError(TabulaError):
    """Persistence failed."""

    kind = "storage_error"


class ExecutionCancelledError(TabulaError):
    """A long-running operation observed a cancellation request."""

    kind = "cancelled"


class ScriptSandboxError(TabulaError):
    """A custom script was rejected, timed out, or failed inside the sandbox."""

    kind = "script_sandbox_error"
