"""Human-readable summaries and exports of a :class:`Comparison`."""

from __future__ import annotations

import csv
import io
import json
from typing import Any, Literal

from tabula_engine.errors import ValidationError
from tabula_engine.models.diff import Comparison

ExportFormat = Literal["json", "csv", "text"]

_RULE = "=" * 80


def _display(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return f"[{len(value)} items]"
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True)
    return str(value)


def _display_key(key: Any) -> str:
    if isinstance(key, list):
        return "|".join(_display(k) for k in key)
    return _display(key)


def render_summary(comparison: Comparison) -> str:
    """Return a short multi-line summary of *comparison*."""
    summary = comparison.summary
    stats = comparison.statistics
    lines = [
        f"Version {comparison.from_version} -> {comparison.to_version}",
        "",
        f"Total Changes: {summary.added + summary.removed + summary.modified}",
        f"  Added: {summary.added} records",
        f"  Removed: {summary.removed} records",
        f"  Modified: {summary.modified} records",
        f"  Unchanged: {summary.unchanged} records",
        "",
        f"Change Rate: {summary.change_percentage:.1f}%",
    ]
    if stats.total_field_changes > 0:
        lines += [
            "",
            f"Total Field Changes: {stats.total_field_changes}",
            f"Avg Changes per Record: {stats.average_field_changes_per_record:.1f}",
        ]
        if stats.largest_change is not None:
            lines.append(
                f"Largest Change: {_display_key(stats.largest_change.key)} "
                f"({len(stats.largest_change.changes)} fields)"
            )
    if comparison.diagnostics.duplicate_keys:
        lines += ["", f"Duplicate keys ignored: {len(comparison.diagnostics.duplicate_keys)}"]
    return "\n".join(lines)


def _to_csv(comparison: Comparison) -> str:
    key_fields = comparison.comparison_key
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(["key", "change_type", "field", "old_value", "new_value"])

    def key_of(record: dict[str, Any]) -> str:
        if len(key_fields) == 1:
            return _display(record.get(key_fields[0]))
        return "|".join(_display(record.get(f)) for f in key_fields)

    for record in comparison.added:
        writer.writerow([key_of(record), "added", "", "", ""])
    for record in comparison.removed:
        writer.writerow([key_of(record), "removed", "", "", ""])
    for change in comparison.modified:
        for field_change in change.changes:
            writer.writerow(
                [
                    _display_key(change.key),
                    "modified",
                    field_change.field,
                    _display(field_change.old_value),
                    _display(field_change.new_value),
                ]
            )
    return buffer.getvalue()


def _to_text(comparison: Comparison) -> str:
    key_fields = comparison.comparison_key
    lines = [
        _RULE,
        f"SNAPSHOT COMPARISON: v{comparison.from_version} -> v{comparison.to_version}",
        _RULE,
        "",
        render_summary(comparison),
        "",
        _RULE,
        "DETAILED CHANGES",
        _RULE,
        "",
    ]
    for record in comparison.added:
        lines += [f"[+] ADDED: {_display_key([record.get(f) for f in key_fields])}", ""]
    for record in comparison.removed:
        lines += [f"[-] REMOVED: {_display_key([record.get(f) for f in key_fields])}", ""]
    for change in comparison.modified:
        lines.append(f"[~] MODIFIED: {_display_key(change.key)}")
        for field_change in change.changes:
            lines += [
                f"    {field_change.field}:",
                f"      Old: {_display(field_change.old_value)}",
                f"      New: {_display(field_change.new_value)}",
            ]
        lines.append("")
    return "\n".join(lines)


def export_comparison(comparison: Comparison, fmt: ExportFormat = "json") -> str:
    """Serialise *comparison* as ``json``, ``csv`` or ``text``."""
    if fmt == "json":
        return comparison.model_dump_json(indent=2)
    if fmt == "csv":
        return _to_csv(comparison)
    if fmt == "text":
        return _to_text(comparison)
    raise ValidationError(f"Unsupported export format: {fmt!r}", format=fmt)
