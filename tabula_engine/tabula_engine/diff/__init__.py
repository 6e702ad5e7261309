"""Keyed record diff between snapshots."""

from tabula_engine.diff.differ import SnapshotDiffer
from tabula_engine.diff.export import export_comparison, render_summary
from tabula_engine.diff.record_diff import RecordDiffer, compare_records, diff_records

__all__ = [
    "RecordDiffer",
    "SnapshotDiffer",
    "compare_records",
    "diff_records",
    "export_comparison",
    "render_summary",
]
