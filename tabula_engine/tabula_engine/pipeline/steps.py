"""Transform step implementations.

Every step variant is dispatched through :func:`execute_step`, which maps
the step's ``type`` tag to one handler.  Handlers take the running dataset
and return a new one; input records are never mutated.  Records are
processed in batches of ``pipeline_batch_size`` and cancellation is checked
between batches, never while a record is being transformed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from collections import Counter
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from tabula_engine.cancellation import CancellationToken
from tabula_engine.config import Settings
from tabula_engine.errors import AmbiguousKeyError, ValidationError
from tabula_engine.models.pipeline import (
    AggregateFunction,
    AggregateStep,
    ConflictResolution,
    CustomScriptStep,
    DeduplicateStep,
    FilterOperator,
    FilterStep,
    JoinStep,
    MapStep,
    MapTransform,
    MergeType,
    PipelineStep,
    Predicate,
    SortDirection,
    SortStep,
)
from tabula_engine.models.schema import FieldType
from tabula_engine.models.snapshot import Record
from tabula_engine.pipeline.sandbox import SandboxLimits, run_script
from tabula_engine.snapshots.schema_inference import text_value, value_type

logger = logging.getLogger(__name__)

RightLoader = Callable[[str, str | None], Awaitable[tuple[str, list[Record]]]]


@dataclass
class StepContext:
    """Per-run state shared by the steps of one execution.

    Attributes
    ----------
    settings:
        Engine settings (batch size, sandbox limits).
    cancel_token:
        Checked between record batches.
    load_right:
        Resolves a join's right-hand dataset; returns ``(snapshot_id, records)``.
    extra_input_snapshot_ids:
        Snapshots read by steps (join right sides), for lineage.
    """

    settings: Settings
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    load_right: RightLoader | None = None
    extra_input_snapshot_ids: list[str] = field(default_factory=list)


@dataclass
class StepOutput:
    records: list[Record]
    warnings: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


async def _batches(records: list[Record], context: StepContext) -> AsyncIterator[list[Record]]:
    size = context.settings.pipeline_batch_size
    for start in range(0, len(records), size):
        context.cancel_token.raise_if_cancelled()
        yield records[start : start + size]
        # Let other tasks (cancel requests, progress readers) run between batches.
        await asyncio.sleep(0)


def _hashable(value: Any) -> tuple[str, Any]:
    kind = value_type(value).value
    if isinstance(value, dict | list | tuple):
        return kind, json.dumps(value, sort_keys=True, separators=(",", ":"))
    return kind, value


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _same_value(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is None and b is None
    if value_type(a) is not value_type(b):
        return False
    return a == b


def _comparable(a: Any, b: Any, what: str) -> None:
    if _is_number(a) and _is_number(b):
        return
    if isinstance(a, str) and isinstance(b, str):
        return
    if isinstance(a, bool) and isinstance(b, bool):
        return
    raise ValidationError(
        f"Cannot compare {value_type(a).value} with {value_type(b).value} in {what}",
        left_type=value_type(a).value,
        right_type=value_type(b).value,
    )


# ---------------------------------------------------------------------------
# filter
# ---------------------------------------------------------------------------


def _ordering(op: FilterOperator, value: Any, target: Any) -> bool:
    if value is None:
        return False
    if target is None:
        raise ValidationError(f"Operator {op.value} requires a non-null value")
    _comparable(value, target, op.value)
    if op is FilterOperator.GREATER_THAN:
        return value > target
    if op is FilterOperator.GREATER_THAN_OR_EQUAL:
        return value >= target
    if op is FilterOperator.LESS_THAN:
        return value < target
    return value <= target


def _string_match(op: FilterOperator, value: Any, target: Any) -> bool:
    if value is None:
        return False
    if op is FilterOperator.CONTAINS and isinstance(value, list):
        return any(_same_value(item, target) for item in value)
    if not isinstance(value, str) or not isinstance(target, str):
        raise ValidationError(
            f"Operator {op.value} requires string operands",
            value_type=value_type(value).value,
        )
    if op is FilterOperator.CONTAINS:
        return target in value
    if op is FilterOperator.STARTS_WITH:
        return value.startswith(target)
    return value.endswith(target)


def _membership(op: FilterOperator, value: Any, target: Any) -> bool:
    if not isinstance(target, list):
        raise ValidationError(f"Operator {op.value} requires a list value")
    found = any(_same_value(value, candidate) for candidate in target)
    return found if op is FilterOperator.IN else not found


def evaluate_predicate(record: Record, predicate: Predicate) -> bool:
    """Return whether *record* satisfies *predicate*."""
    op = predicate.operator
    value = record.get(predicate.field)
    if op is FilterOperator.IS_NULL:
        return value is None
    if op is FilterOperator.IS_NOT_NULL:
        return value is not None
    if op is FilterOperator.EQUALS:
        return _same_value(value, predicate.value)
    if op is FilterOperator.NOT_EQUALS:
        return not _same_value(value, predicate.value)
    if op in (
        FilterOperator.GREATER_THAN,
        FilterOperator.GREATER_THAN_OR_EQUAL,
        FilterOperator.LESS_THAN,
        FilterOperator.LESS_THAN_OR_EQUAL,
    ):
        return _ordering(op, value, predicate.value)
    if op in (FilterOperator.CONTAINS, FilterOperator.STARTS_WITH, FilterOperator.ENDS_WITH):
        return _string_match(op, value, predicate.value)
    return _membership(op, value, predicate.value)


async def _run_filter(step: FilterStep, records: list[Record], context: StepContext) -> StepOutput:
    kept: list[Record] = []
    async for batch in _batches(records, context):
        kept.extend(r for r in batch if all(evaluate_predicate(r, p) for p in step.predicates))
    return StepOutput(records=kept)


# ---------------------------------------------------------------------------
# map
# ---------------------------------------------------------------------------

_TRUE_STRINGS = frozenset({"true", "t", "yes", "y", "1"})
_FALSE_STRINGS = frozenset({"false", "f", "no", "n", "0", ""})


class _CoercionFailed(Exception):
    pass


def apply_transform(transform: MapTransform, value: Any) -> Any:
    """Apply a map transform to a non-null value; raises ``_CoercionFailed``."""
    if transform is MapTransform.TO_STRING:
        return text_value(value)
    if transform in (MapTransform.TO_UPPERCASE, MapTransform.TO_LOWERCASE, MapTransform.TRIM):
        if isinstance(value, dict | list):
            raise _CoercionFailed
        text = text_value(value)
        if transform is MapTransform.TO_UPPERCASE:
            return text.upper()
        if transform is MapTransform.TO_LOWERCASE:
            return text.lower()
        return text.strip()
    if transform is MapTransform.TO_NUMBER:
        if _is_number(value):
            return value
        if isinstance(value, str):
            text = value.strip()
            try:
                return int(text)
            except ValueError:
                pass
            try:
                number = float(text)
            except ValueError as exc:
                raise _CoercionFailed from exc
            if math.isnan(number) or math.isinf(number):
                raise _CoercionFailed
            return number
        raise _CoercionFailed
    # to_boolean
    if isinstance(value, bool):
        return value
    if _is_number(value):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise _CoercionFailed


async def _run_map(step: MapStep, records: list[Record], context: StepContext) -> StepOutput:
    targets = {m.target_field for m in step.mappings}
    renamed_sources = {
        m.source_field
        for m in step.mappings
        if step.rename and m.source_field and m.source_field != m.target_field and m.source_field not in targets
    }
    drop = set(step.drop_fields)
    failures: Counter[tuple[str, str]] = Counter()

    output: list[Record] = []
    async for batch in _batches(records, context):
        for record in batch:
            row: Record = dict(record) if step.keep_unmapped else {}
            for mapping in step.mappings:
                value = record.get(mapping.source_field) if mapping.source_field else None
                if value is None:
                    value = mapping.default
                if mapping.transform is not None and value is not None:
                    try:
                        value = apply_transform(mapping.transform, value)
                    except _CoercionFailed:
                        failures[(mapping.target_field, mapping.transform.value)] += 1
                        value = None
                row[mapping.target_field] = value
            for name in renamed_sources:
                row.pop(name, None)
            for name in drop:
                row.pop(name, None)
            output.append(row)

    warnings = [
        f"{count} value(s) of '{target}' could not be converted with {transform}; set to null"
        for (target, transform), count in failures.items()
    ]
    return StepOutput(records=output, warnings=warnings)


# ---------------------------------------------------------------------------
# sort
# ---------------------------------------------------------------------------


async def _run_sort(step: SortStep, records: list[Record], context: StepContext) -> StepOutput:
    context.cancel_token.raise_if_cancelled()
    ordered = list(records)
    # Successive stable sorts, least significant key first.
    for key in reversed(step.fields):
        present = [r for r in ordered if r.get(key.field) is not None]
        missing = [r for r in ordered if r.get(key.field) is None]
        kinds = {FieldType.NUMBER if _is_number(r[key.field]) else value_type(r[key.field]) for r in present}
        if len(kinds) > 1 or kinds & {FieldType.OBJECT, FieldType.ARRAY}:
            raise ValidationError(
                f"Cannot sort field {key.field!r} holding {sorted(k.value for k in kinds)}",
                field=key.field,
            )
        present.sort(key=lambda r: r[key.field], reverse=key.direction is SortDirection.DESC)
        ordered = present + missing
        await asyncio.sleep(0)
    return StepOutput(records=ordered)


# ---------------------------------------------------------------------------
# aggregate
# ---------------------------------------------------------------------------


@dataclass
class _Accumulator:
    rows: int = 0
    non_null: int = 0
    total: Any = 0
    minimum: Any = None
    maximum: Any = None


def _accumulate(acc: _Accumulator, function: AggregateFunction, value: Any, field_name: str) -> None:
    acc.rows += 1
    if value is None:
        return
    if function in (AggregateFunction.SUM, AggregateFunction.AVG):
        if not _is_number(value):
            raise ValidationError(
                f"Cannot {function.value} non-numeric value in field {field_name!r}",
                field=field_name,
                value_type=value_type(value).value,
            )
        acc.total += value
    elif function in (AggregateFunction.MIN, AggregateFunction.MAX):
        if acc.minimum is None:
            acc.minimum = acc.maximum = value
        else:
            _comparable(acc.minimum, value, f"{function.value}({field_name})")
            acc.minimum = min(acc.minimum, value)
            acc.maximum = max(acc.maximum, value)
    acc.non_null += 1


def _finalise(acc: _Accumulator, function: AggregateFunction) -> Any:
    if function is AggregateFunction.COUNT:
        return acc.rows
    if function is AggregateFunction.SUM:
        return acc.total
    if function is AggregateFunction.AVG:
        return acc.total / acc.non_null if acc.non_null else None
    if function is AggregateFunction.MIN:
        return acc.minimum
    return acc.maximum


async def _run_aggregate(step: AggregateStep, records: list[Record], context: StepContext) -> StepOutput:
    groups: dict[tuple[tuple[str, Any], ...], tuple[Record, list[_Accumulator]]] = {}

    async for batch in _batches(records, context):
        for record in batch:
            key = tuple(_hashable(record.get(f)) for f in step.group_by)
            entry = groups.get(key)
            if entry is None:
                entry = ({f: record.get(f) for f in step.group_by}, [_Accumulator() for _ in step.aggregations])
                groups[key] = entry
            for agg, acc in zip(step.aggregations, entry[1], strict=True):
                _accumulate(acc, agg.function, record.get(agg.field), agg.field)

    if not groups and not step.group_by:
        groups[()] = ({}, [_Accumulator() for _ in step.aggregations])

    output: list[Record] = []
    for group_values, accumulators in groups.values():
        row = dict(group_values)
        for agg, acc in zip(step.aggregations, accumulators, strict=True):
            row[agg.output_name] = _finalise(acc, agg.function)
        output.append(row)
    return StepOutput(records=output)


# ---------------------------------------------------------------------------
# join
# ---------------------------------------------------------------------------


def _merge_rows(
    left: Record,
    right: Record,
    key_fields: list[str],
    resolution: ConflictResolution,
) -> Record:
    merged = dict(left)
    for name, right_value in right.items():
        if name in key_fields:
            continue
        if name not in left:
            merged[name] = right_value
            continue
        left_value = left[name]
        if resolution is ConflictResolution.LEFT:
            continue
        if resolution is ConflictResolution.RIGHT:
            merged[name] = right_value
        elif resolution is ConflictResolution.MERGE:
            # Non-null side wins; when both are non-null the right side wins.
            if right_value is not None:
                merged[name] = right_value
        elif not _same_value(left_value, right_value):
            raise ValidationError(
                f"Join conflict on field {name!r}",
                field=name,
                key={k: left.get(k) for k in key_fields},
                left_value=left_value,
                right_value=right_value,
            )
    return merged


async def _run_join(step: JoinStep, records: list[Record], context: StepContext) -> StepOutput:
    if context.load_right is None:
        raise ValidationError("Join steps need a snapshot store to load the right-hand dataset")
    snapshot_id, right_records = await context.load_right(step.right_data_source_id, step.right_snapshot_id)
    context.extra_input_snapshot_ids.append(snapshot_id)

    if step.merge_type is MergeType.UNION:
        return StepOutput(records=[dict(r) for r in records] + [dict(r) for r in right_records])

    key_fields = step.key

    def _key(record: Record) -> tuple[tuple[str, Any], ...] | None:
        values = [record.get(f) for f in key_fields]
        if any(v is None for v in values):
            return None
        return tuple(_hashable(v) for v in values)

    right_index: dict[tuple[tuple[str, Any], ...], int] = {}
    duplicates: list[Any] = []
    for position, record in enumerate(right_records):
        key = _key(record)
        if key is None:
            continue
        if key in right_index:
            duplicates.append([record.get(f) for f in key_fields])
            continue
        right_index[key] = position
    if duplicates:
        raise AmbiguousKeyError(
            f"Join key {key_fields} is not unique in {step.right_data_source_id}",
            duplicate_keys=duplicates,
            right_data_source_id=step.right_data_source_id,
        )

    matched_right: set[int] = set()
    output: list[Record] = []
    keep_left_only = step.merge_type in (MergeType.LEFT, MergeType.OUTER)
    async for batch in _batches(records, context):
        for record in batch:
            key = _key(record)
            position = right_index.get(key) if key is not None else None
            if position is None:
                if keep_left_only:
                    output.append(dict(record))
                continue
            matched_right.add(position)
            output.append(_merge_rows(record, right_records[position], key_fields, step.conflict_resolution))

    if step.merge_type in (MergeType.RIGHT, MergeType.OUTER):
        output.extend(dict(r) for i, r in enumerate(right_records) if i not in matched_right)
    return StepOutput(records=output)


# ---------------------------------------------------------------------------
# deduplicate
# ---------------------------------------------------------------------------


async def _run_deduplicate(step: DeduplicateStep, records: list[Record], context: StepContext) -> StepOutput:
    def _identity(record: Record) -> Any:
        if step.key is None:
            return json.dumps(record, sort_keys=True, separators=(",", ":"))
        return tuple(_hashable(record.get(f)) for f in step.key)

    chosen: dict[Any, int] = {}
    position = 0
    async for batch in _batches(records, context):
        for record in batch:
            identity = _identity(record)
            if step.keep == "last" or identity not in chosen:
                chosen[identity] = position
            position += 1

    keep_positions = set(chosen.values())
    output = [dict(r) for i, r in enumerate(records) if i in keep_positions]
    removed = len(records) - len(output)
    if removed:
        logger.debug("Deduplicate removed %d record(s)", removed)
    return StepOutput(records=output)


# ---------------------------------------------------------------------------
# custom_script
# ---------------------------------------------------------------------------


async def _run_custom_script(step: CustomScriptStep, records: list[Record], context: StepContext) -> StepOutput:
    context.cancel_token.raise_if_cancelled()
    settings = context.settings
    limits = SandboxLimits(
        timeout_seconds=step.timeout_seconds or settings.script_timeout_seconds,
        cpu_seconds=settings.script_cpu_seconds,
        memory_limit_mb=settings.script_memory_limit_mb,
        max_output_rows=settings.script_max_output_rows,
    )
    rows = await run_script(step.script, step.mode, records, limits)
    return StepOutput(records=rows)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

_HANDLERS: dict[str, Callable[[Any, list[Record], StepContext], Awaitable[StepOutput]]] = {
    "filter": _run_filter,
    "map": _run_map,
    "sort": _run_sort,
    "aggregate": _run_aggregate,
    "join": _run_join,
    "deduplicate": _run_deduplicate,
    "custom_script": _run_custom_script,
}


async def execute_step(step: PipelineStep, records: list[Record], context: StepContext) -> StepOutput:
    """Run one step over *records* and return the resulting dataset."""
    handler = _HANDLERS.get(step.type)
    if handler is None:
        raise ValidationError(f"Unknown step type {step.type!r}", step_type=step.type)
    return await handler(step, records, context)
