"""Tests for sandboxed custom script execution.

Each case spawns a child process, so the suite keeps the number of runs
small and uses generous timeouts except where the timeout is the subject.
"""

from __future__ import annotations

import pytest

from tabula_engine.config import Settings
from tabula_engine.errors import ScriptSandboxError
from tabula_engine.models.pipeline import CustomScriptStep
from tabula_engine.pipeline.sandbox import SandboxLimits, run_script
from tabula_engine.pipeline.steps import StepContext, execute_step

_LIMITS = SandboxLimits(timeout_seconds=30.0)


class TestRunScript:
    @pytest.mark.asyncio
    async def test_row_mode(self) -> None:
        script = (
            "def transform(row):\n"
            "    if row['qty'] == 0:\n"
            "        return None\n"
            "    row['total'] = row['price'] * row['qty']\n"
            "    return row\n"
        )
        records = [{"price": 2, "qty": 3}, {"price": 5, "qty": 0}, {"price": 1.5, "qty": 2}]

        rows = await run_script(script, "row", records, _LIMITS)

        assert rows == [{"price": 2, "qty": 3, "total": 6}, {"price": 1.5, "qty": 2, "total": 3.0}]
        assert "total" not in records[0]

    @pytest.mark.asyncio
    async def test_row_mode_can_fan_out(self) -> None:
        script = "def transform(row):\n    return [{'n': row['n']}, {'n': row['n'] * 10}]\n"
        rows = await run_script(script, "row", [{"n": 1}, {"n": 2}], _LIMITS)
        assert rows == [{"n": 1}, {"n": 10}, {"n": 2}, {"n": 20}]

    @pytest.mark.asyncio
    async def test_dataset_mode(self) -> None:
        script = "def transform(rows):\n    return [{'count': len(rows), 'total': sum(r['v'] for r in rows)}]\n"
        rows = await run_script(script, "dataset", [{"v": 1}, {"v": 2}, {"v": 3}], _LIMITS)
        assert rows == [{"count": 3, "total": 6}]

    @pytest.mark.asyncio
    async def test_script_exception(self) -> None:
        script = "def transform(row):\n    return {'x': 1 / row['v']}\n"
        with pytest.raises(ScriptSandboxError) as excinfo:
            await run_script(script, "row", [{"v": 0}], _LIMITS)
        assert excinfo.value.context["reason"] == "script_error"
        assert excinfo.value.context["error_type"] == "ZeroDivisionError"

    @pytest.mark.asyncio
    async def test_invalid_output(self) -> None:
        script = "def transform(row):\n    return 42\n"
        with pytest.raises(ScriptSandboxError) as excinfo:
            await run_script(script, "row", [{"v": 0}], _LIMITS)
        assert excinfo.value.context["error_type"] == "TypeError"

    @pytest.mark.asyncio
    async def test_output_row_limit(self) -> None:
        script = "def transform(row):\n    return [row, row]\n"
        limits = SandboxLimits(timeout_seconds=30.0, max_output_rows=3)
        with pytest.raises(ScriptSandboxError):
            await run_script(script, "row", [{"v": 1}, {"v": 2}], limits)

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        script = "def transform(row):\n    while True:\n        pass\n"
        limits = SandboxLimits(timeout_seconds=1.0, cpu_seconds=5)
        with pytest.raises(ScriptSandboxError) as excinfo:
            await run_script(script, "row", [{"v": 1}], limits)
        assert excinfo.value.context["reason"] == "timeout"

    @pytest.mark.asyncio
    async def test_guard_runs_first(self) -> None:
        with pytest.raises(ScriptSandboxError) as excinfo:
            await run_script("import os\ndef transform(r):\n    return r\n", "row", [], _LIMITS)
        assert "violations" in excinfo.value.context


class TestCustomScriptStep:
    @pytest.mark.asyncio
    async def test_step_uses_sandbox(self, settings: Settings) -> None:
        step = CustomScriptStep(script="def transform(row):\n    row['name'] = row['name'].upper()\n    return row\n")
        output = await execute_step(step, [{"name": "ada"}], StepContext(settings=settings))
        assert output.records == [{"name": "ADA"}]
