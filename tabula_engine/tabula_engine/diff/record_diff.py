"""Keyed record diff between two datasets.

The differ is fed incrementally: every record of the *from* dataset is
indexed by its normalised comparison key, then the *to* dataset is scanned
batch by batch.  Each scanned record is classified as added, modified or
unchanged; index entries never visited during the scan are removed.

Key and value normalisation follow :class:`DiffOptions`: string values are
stripped when ``trim_strings`` and lower-cased unless ``case_sensitive``.
``None`` and a missing field are considered equal.
"""

from __future__ import annotations

import json
from collections import Counter
from collections.abc import Iterable, Mapping
from typing import Any

from tabula_engine.errors import AmbiguousKeyError
from tabula_engine.models.diff import (
    ChangeType,
    Comparison,
    ComparisonDiagnostics,
    ComparisonStatistics,
    ComparisonSummary,
    DiffOptions,
    FieldChange,
    FieldChangeCount,
    RecordChange,
)
from tabula_engine.snapshots.schema_inference import value_type

_TOP_FIELDS = 10

RecordKey = tuple[tuple[str, Any], ...]


def normalize_value(value: Any, options: DiffOptions) -> Any:
    if isinstance(value, str):
        if options.trim_strings:
            value = value.strip()
        if not options.case_sensitive:
            value = value.lower()
    return value


def _hashable(value: Any) -> tuple[str, Any]:
    # Tag with the value kind so True and 1 never collide.
    kind = value_type(value).value
    if isinstance(value, Mapping | list | tuple):
        return kind, json.dumps(value, sort_keys=True, separators=(",", ":"))
    return kind, value


def make_key(record: Mapping[str, Any], key_fields: list[str], options: DiffOptions) -> RecordKey:
    return tuple(_hashable(normalize_value(record.get(f), options)) for f in key_fields)


def display_key(record: Mapping[str, Any], key_fields: list[str]) -> Any:
    """Key as presented to callers: the raw value, or a list for composite keys."""
    if len(key_fields) == 1:
        return record.get(key_fields[0])
    return [record.get(f) for f in key_fields]


def values_equal(a: Any, b: Any, options: DiffOptions) -> bool:
    a = normalize_value(a, options)
    b = normalize_value(b, options)
    if a is None or b is None:
        return a is None and b is None
    if value_type(a) is not value_type(b):
        return False
    return a == b


def compare_records(
    before: Mapping[str, Any],
    after: Mapping[str, Any],
    options: DiffOptions,
) -> list[FieldChange]:
    """Return per-field changes between two records sharing a key."""
    ignored = set(options.ignore_fields)
    changes: list[FieldChange] = []
    for field in dict.fromkeys([*before.keys(), *after.keys()]):
        if field in ignored:
            continue
        old = before.get(field)
        new = after.get(field)
        if values_equal(old, new, options):
            continue
        if old is None:
            change_type = ChangeType.ADDED
        elif new is None:
            change_type = ChangeType.REMOVED
        else:
            change_type = ChangeType.MODIFIED
        changes.append(
            FieldChange(
                field=field,
                old_value=old,
                new_value=new,
                change_type=change_type,
                value_type=value_type(new if new is not None else old).value,
            )
        )
    return changes


class RecordDiffer:
    """Incremental differ over a *from* dataset (A) and a *to* dataset (B).

    Feed every batch of A to :meth:`index_from` before the first call to
    :meth:`scan_to`, then call :meth:`finish`.
    """

    def __init__(self, key_fields: list[str], options: DiffOptions | None = None) -> None:
        self.key_fields = key_fields
        self.options = options or DiffOptions()
        self._index: dict[RecordKey, dict[str, Any]] = {}
        self._visited: set[RecordKey] = set()
        self._seen_to: set[RecordKey] = set()
        self._dup_from: list[Any] = []
        self._dup_to: list[Any] = []
        self._total_from = 0
        self._total_to = 0
        self._counts: Counter[str] = Counter()
        self._field_counts: Counter[str] = Counter()
        self._added: list[dict[str, Any]] = []
        self._modified: list[RecordChange] = []
        self._unchanged: list[RecordChange] = []
        self._largest: RecordChange | None = None
        self._truncated = False

    def _keep(self, bucket: list[Any]) -> bool:
        limit = self.options.max_changes
        if limit is not None and len(bucket) >= limit:
            self._truncated = True
            return False
        return True

    def index_from(self, records: Iterable[Mapping[str, Any]]) -> None:
        for record in records:
            self._total_from += 1
            key = make_key(record, self.key_fields, self.options)
            if key in self._index:
                self._dup_from.append(display_key(record, self.key_fields))
                continue
            self._index[key] = dict(record)

    def _check_duplicates(self) -> None:
        if self.options.duplicate_keys != "error":
            return
        if self._dup_from or self._dup_to:
            duplicates = self._dup_from + self._dup_to
            raise AmbiguousKeyError(
                f"Comparison key {self.key_fields} is not unique ({len(duplicates)} duplicate(s))",
                duplicate_keys=duplicates,
                comparison_key=self.key_fields,
                duplicates_in_from=len(self._dup_from),
                duplicates_in_to=len(self._dup_to),
            )

    def scan_to(self, records: Iterable[Mapping[str, Any]]) -> None:
        self._check_duplicates()
        for record in records:
            self._total_to += 1
            key = make_key(record, self.key_fields, self.options)
            if key in self._seen_to:
                self._dup_to.append(display_key(record, self.key_fields))
                continue
            self._seen_to.add(key)

            before = self._index.get(key)
            if before is None:
                self._counts["added"] += 1
                if self._keep(self._added):
                    self._added.append(dict(record))
                continue

            self._visited.add(key)
            changes = compare_records(before, record, self.options)
            if changes:
                self._counts["modified"] += 1
                for change in changes:
                    self._field_counts[change.field] += 1
                modification = RecordChange(
                    key=display_key(record, self.key_fields),
                    change_type=ChangeType.MODIFIED,
                    before=before,
                    after=dict(record),
                    changes=changes,
                )
                # Earliest record wins ties; not subject to max_changes.
                if self._largest is None or len(changes) > len(self._largest.changes):
                    self._largest = modification
                if self._keep(self._modified):
                    self._modified.append(modification)
            else:
                self._counts["unchanged"] += 1
                if self.options.include_unchanged and self._keep(self._unchanged):
                    self._unchanged.append(
                        RecordChange(
                            key=display_key(record, self.key_fields),
                            change_type=ChangeType.UNCHANGED,
                            before=before,
                            after=dict(record),
                        )
                    )
        self._check_duplicates()

    def finish(self, from_snapshot_id: str = "", to_snapshot_id: str = "") -> Comparison:
        self._check_duplicates()
        removed: list[dict[str, Any]] = []
        removed_count = 0
        for key, record in self._index.items():
            if key in self._visited:
                continue
            removed_count += 1
            if self._keep(removed):
                removed.append(record)

        added_count = self._counts["added"]
        modified_count = self._counts["modified"]
        largest = max(self._total_from, self._total_to)
        changed = added_count + removed_count + modified_count
        summary = ComparisonSummary(
            total_from=self._total_from,
            total_to=self._total_to,
            added=added_count,
            removed=removed_count,
            modified=modified_count,
            unchanged=self._counts["unchanged"],
            change_percentage=round(changed / largest * 100, 4) if largest else 0.0,
        )

        total_field_changes = sum(self._field_counts.values())
        statistics = ComparisonStatistics(
            total_field_changes=total_field_changes,
            fields_changed=dict(self._field_counts),
            top_changed_fields=[
                FieldChangeCount(field=f, count=c) for f, c in self._field_counts.most_common(_TOP_FIELDS)
            ],
            largest_change=self._largest,
            average_field_changes_per_record=(total_field_changes / modified_count if modified_count else 0.0),
        )

        return Comparison(
            from_snapshot_id=from_snapshot_id,
            to_snapshot_id=to_snapshot_id,
            comparison_key=self.key_fields,
            added=self._added,
            removed=removed,
            modified=self._modified,
            unchanged=self._unchanged,
            summary=summary,
            statistics=statistics,
            diagnostics=ComparisonDiagnostics(
                duplicate_keys_from=self._dup_from,
                duplicate_keys_to=self._dup_to,
                truncated=self._truncated,
            ),
        )


def diff_records(
    from_records: Iterable[Mapping[str, Any]],
    to_records: Iterable[Mapping[str, Any]],
    comparison_key: str | list[str],
    options: DiffOptions | None = None,
) -> Comparison:
    """Diff two in-memory datasets on *comparison_key*."""
    key_fields = [comparison_key] if isinstance(comparison_key, str) else list(comparison_key)
    differ = RecordDiffer(key_fields, options)
    differ.index_from(from_records)
    differ.scan_to(to_records)
    return differ.finish()
