"""Transform pipelines: step implementations, the script sandbox and the executor."""

from tabula_engine.pipeline.executor import PipelineExecutor, PipelinePreview
from tabula_engine.pipeline.sandbox import SandboxLimits, run_script
from tabula_engine.pipeline.script_guard import ScriptViolation, check_script_safety
from tabula_engine.pipeline.steps import StepContext, StepOutput, evaluate_predicate, execute_step

__all__ = [
    "PipelineExecutor",
    "PipelinePreview",
    "SandboxLimits",
    "ScriptViolation",
    "StepContext",
    "StepOutput",
    "check_script_safety",
    "evaluate_predicate",
    "execute_step",
    "run_script",
]
