"""Script safety guard: AST-based deny-list for custom script steps.

Rejects constructs that could escape the sandbox's capability boundary
before a script is ever handed to a child process.  Detection is purely
structural, so obfuscation through whitespace or formatting is ineffective.
"""

from __future__ import annotations

import ast
import enum
import logging

from pydantic import BaseModel, Field

from tabula_engine.errors import ScriptSandboxError

logger = logging.getLogger(__name__)


class ScriptViolationKind(str, enum.Enum):
    SYNTAX_ERROR = "SYNTAX_ERROR"
    IMPORT = "IMPORT"
    DUNDER_ACCESS = "DUNDER_ACCESS"
    FORBIDDEN_CALL = "FORBIDDEN_CALL"
    SCOPE_ESCAPE = "SCOPE_ESCAPE"
    ASYNC_CODE = "ASYNC_CODE"
    MISSING_TRANSFORM = "MISSING_TRANSFORM"


class ScriptViolation(BaseModel):
    """A single detected violation of the script safety policy."""

    kind: ScriptViolationKind
    description: str
    line_number: int | None = Field(default=None, description="Source line, if known.")


# Builtins that expose reflection, code loading or I/O.
FORBIDDEN_NAMES: frozenset[str] = frozenset(
    {
        "__import__",
        "breakpoint",
        "compile",
        "delattr",
        "dir",
        "eval",
        "exec",
        "exit",
        "getattr",
        "globals",
        "hasattr",
        "help",
        "input",
        "locals",
        "memoryview",
        "open",
        "quit",
        "setattr",
        "super",
        "type",
        "vars",
    }
)


class _Visitor(ast.NodeVisitor):
    def __init__(self) -> None:
        self.violations: list[ScriptViolation] = []

    def _add(self, kind: ScriptViolationKind, description: str, node: ast.AST) -> None:
        self.violations.append(
            ScriptViolation(kind=kind, description=description, line_number=getattr(node, "lineno", None))
        )

    def visit_Import(self, node: ast.Import) -> None:
        self._add(ScriptViolationKind.IMPORT, "import statements are not allowed", node)

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        self._add(ScriptViolationKind.IMPORT, "import statements are not allowed", node)

    def visit_Global(self, node: ast.Global) -> None:
        self._add(ScriptViolationKind.SCOPE_ESCAPE, "global statements are not allowed", node)

    def visit_Nonlocal(self, node: ast.Nonlocal) -> None:
        self._add(ScriptViolationKind.SCOPE_ESCAPE, "nonlocal statements are not allowed", node)

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> None:
        self._add(ScriptViolationKind.ASYNC_CODE, "async functions are not allowed", node)

    def visit_Await(self, node: ast.Await) -> None:
        self._add(ScriptViolationKind.ASYNC_CODE, "await is not allowed", node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("_"):
            self._add(
                ScriptViolationKind.DUNDER_ACCESS,
                f"access to private attribute {node.attr!r} is not allowed",
                node,
            )
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("__"):
            self._add(ScriptViolationKind.DUNDER_ACCESS, f"name {node.id!r} is not allowed", node)
        elif node.id in FORBIDDEN_NAMES:
            self._add(ScriptViolationKind.FORBIDDEN_CALL, f"use of {node.id!r} is not allowed", node)

    def visit_Constant(self, node: ast.Constant) -> None:
        # Format-string style attribute lookups ("{0.__class__}") reach dunders too.
        if isinstance(node.value, str) and "__" in node.value and "{" in node.value:
            self._add(ScriptViolationKind.DUNDER_ACCESS, "dunder names inside format strings are not allowed", node)


def check_script_safety(script: str) -> list[ScriptViolation]:
    """Return every safety violation found in *script*.

    A script must define a top-level ``transform`` function.  An empty list
    means the script may be executed in the sandbox.
    """
    try:
        tree = ast.parse(script, filename="<custom_script>", mode="exec")
    except SyntaxError as exc:
        return [
            ScriptViolation(
                kind=ScriptViolationKind.SYNTAX_ERROR,
                description=f"script does not parse: {exc.msg}",
                line_number=exc.lineno,
            )
        ]

    visitor = _Visitor()
    visitor.visit(tree)

    has_transform = any(isinstance(node, ast.FunctionDef) and node.name == "transform" for node in tree.body)
    if not has_transform:
        visitor.violations.append(
            ScriptViolation(
                kind=ScriptViolationKind.MISSING_TRANSFORM,
                description="script must define a top-level function named 'transform'",
            )
        )
    return visitor.violations


def assert_script_safe(script: str) -> None:
    """Raise :class:`ScriptSandboxError` if *script* has any violation."""
    violations = check_script_safety(script)
    if not violations:
        return
    logger.warning("Script guard rejected custom script: %d violation(s)", len(violations))
    raise ScriptSandboxError(
        "Unsafe custom script: " + "; ".join(v.description for v in violations),
        violations=[v.model_dump(mode="json") for v in violations],
    )
