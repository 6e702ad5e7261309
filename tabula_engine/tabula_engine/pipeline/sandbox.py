"""Isolated execution of custom script steps.

A script runs in a freshly spawned child process with a whitelisted set of
builtins, CPU, memory and file-size rlimits (where the platform provides
them) and a wall-clock timeout enforced by the parent.  Records cross the
process boundary through a pipe; nothing else is shared.
"""

from __future__ import annotations

import asyncio
import builtins
import contextlib
import logging
import multiprocessing
import sys
from dataclasses import dataclass
from multiprocessing.connection import Connection
from typing import Any

from tabula_engine.errors import ScriptSandboxError
from tabula_engine.pipeline.script_guard import assert_script_safe

logger = logging.getLogger(__name__)

SAFE_BUILTIN_NAMES: tuple[str, ...] = (
    "abs",
    "all",
    "any",
    "bool",
    "dict",
    "divmod",
    "enumerate",
    "filter",
    "float",
    "frozenset",
    "int",
    "isinstance",
    "len",
    "list",
    "map",
    "max",
    "min",
    "next",
    "pow",
    "range",
    "repr",
    "reversed",
    "round",
    "set",
    "slice",
    "sorted",
    "str",
    "sum",
    "tuple",
    "zip",
    "ArithmeticError",
    "Exception",
    "IndexError",
    "KeyError",
    "TypeError",
    "ValueError",
    "ZeroDivisionError",
)


@dataclass(frozen=True)
class SandboxLimits:
    """Resource bounds applied to one script execution."""

    timeout_seconds: float = 30.0
    cpu_seconds: int = 30
    memory_limit_mb: int = 512
    max_output_rows: int = 1_000_000


def _apply_rlimits(limits: SandboxLimits) -> None:
    if sys.platform == "win32":
        return
    import resource

    def _set(which: int, value: int) -> None:
        _, hard = resource.getrlimit(which)
        if hard != resource.RLIM_INFINITY:
            value = min(value, hard)
        # Some limits cannot be lowered inside containers.
        with contextlib.suppress(ValueError, OSError):
            resource.setrlimit(which, (value, hard))

    _set(resource.RLIMIT_CPU, limits.cpu_seconds)
    _set(resource.RLIMIT_AS, limits.memory_limit_mb * 1024 * 1024)
    _set(resource.RLIMIT_FSIZE, 0)


def _run_transform(script: str, mode: str, records: list[dict[str, Any]], max_rows: int) -> list[dict[str, Any]]:
    safe_builtins = {name: getattr(builtins, name) for name in SAFE_BUILTIN_NAMES}
    namespace: dict[str, Any] = {"__builtins__": safe_builtins, "__name__": "custom_script"}
    exec(compile(script, "<custom_script>", "exec"), namespace)  # noqa: S102
    transform = namespace.get("transform")
    if not callable(transform):
        raise TypeError("script must define a callable 'transform'")

    output: list[dict[str, Any]] = []

    def _collect(value: Any) -> None:
        if not isinstance(value, dict):
            raise TypeError(f"transform must produce dicts, got {type(value).__name__}")
        if any(not isinstance(k, str) for k in value):
            raise TypeError("output record keys must be strings")
        if len(output) >= max_rows:
            raise ValueError(f"script produced more than {max_rows} rows")
        output.append(value)

    if mode == "dataset":
        result = transform([dict(r) for r in records])
        if not isinstance(result, list | tuple):
            raise TypeError(f"dataset transform must return a list, got {type(result).__name__}")
        for item in result:
            _collect(item)
        return output

    for record in records:
        result = transform(dict(record))
        if result is None:
            continue
        if isinstance(result, list | tuple):
            for item in result:
                _collect(item)
        else:
            _collect(result)
    return output


def _sandbox_worker(
    conn: Connection,
    script: str,
    mode: str,
    records: list[dict[str, Any]],
    limits: SandboxLimits,
) -> None:
    """Child-process entry point; sends ``("ok", rows)`` or ``("error", type, message)``."""
    try:
        _apply_rlimits(limits)
        rows = _run_transform(script, mode, records, limits.max_output_rows)
        conn.send(("ok", rows))
    except BaseException as exc:  # noqa: BLE001
        with contextlib.suppress(OSError, ValueError):
            conn.send(("error", type(exc).__name__, str(exc)))
    finally:
        conn.close()


def _execute_blocking(
    script: str,
    mode: str,
    records: list[dict[str, Any]],
    limits: SandboxLimits,
) -> list[dict[str, Any]]:
    ctx = multiprocessing.get_context("spawn")
    parent_conn, child_conn = ctx.Pipe(duplex=False)
    process = ctx.Process(
        target=_sandbox_worker,
        args=(child_conn, script, mode, records, limits),
        daemon=True,
    )
    process.start()
    child_conn.close()
    try:
        if not parent_conn.poll(limits.timeout_seconds):
            raise ScriptSandboxError(
                f"Custom script exceeded the {limits.timeout_seconds:g}s time limit",
                reason="timeout",
                timeout_seconds=limits.timeout_seconds,
            )
        try:
            message = parent_conn.recv()
        except EOFError as exc:
            raise ScriptSandboxError(
                "Custom script process terminated without a result",
                reason="crashed",
                exit_code=process.exitcode,
            ) from exc
    finally:
        parent_conn.close()
        if process.is_alive():
            process.kill()
        process.join(timeout=5)

    if message[0] == "ok":
        return message[1]
    _, error_type, detail = message
    raise ScriptSandboxError(
        f"Custom script failed: {error_type}: {detail}",
        reason="script_error",
        error_type=error_type,
        detail=detail,
    )


async def run_script(
    script: str,
    mode: str,
    records: list[dict[str, Any]],
    limits: SandboxLimits,
) -> list[dict[str, Any]]:
    """Validate *script* and run its ``transform`` over *records* in the sandbox.

    Parameters
    ----------
    script:
        Python source defining ``transform(row)`` (row mode) or
        ``transform(rows)`` (dataset mode).
    mode:
        ``"row"`` or ``"dataset"``.
    records:
        Input records; the child receives copies.
    limits:
        Time and resource bounds.

    Raises
    ------
    ScriptSandboxError
        If the script is rejected by the guard, fails, times out or
        produces invalid output.
    """
    assert_script_safe(script)
    logger.debug("Running custom script (%s mode) over %d records", mode, len(records))
    return await asyncio.to_thread(_execute_blocking, script, mode, records, limits)
