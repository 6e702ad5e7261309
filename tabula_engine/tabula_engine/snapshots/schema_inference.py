"""Record validation, value classification and schema inference.

Records are plain dictionaries of JSON values.  Every value is classified
into one of the :class:`~tabula_engine.models.schema.FieldType` tags, and a
schema is the ordered list of columns with the single non-null tag each
column holds.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
from collections.abc import Iterable, Mapping
from typing import Any

from tabula_engine.errors import SchemaInferenceError, ValidationError
from tabula_engine.models.schema import FieldType, SchemaField

logger = logging.getLogger(__name__)


def value_type(value: Any) -> FieldType:
    """Classify a JSON value into its :class:`FieldType` tag.

    Raises
    ------
    ValidationError
        If *value* is not representable as JSON.
    """
    if value is None:
        return FieldType.NULL
    # bool is a subclass of int and must be tested first.
    if isinstance(value, bool):
        return FieldType.BOOLEAN
    if isinstance(value, int):
        return FieldType.NUMBER
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ValidationError("Non-finite numbers are not valid record values", value=repr(value))
        return FieldType.NUMBER
    if isinstance(value, str):
        return FieldType.STRING
    if isinstance(value, Mapping):
        return FieldType.OBJECT
    if isinstance(value, list | tuple):
        return FieldType.ARRAY
    raise ValidationError(
        f"Unsupported value of type {type(value).__name__!r}",
        value_type=type(value).__name__,
    )


def _check_json_value(value: Any, path: str) -> None:
    kind = value_type(value)
    if kind is FieldType.OBJECT:
        for key, nested in value.items():
            if not isinstance(key, str):
                raise ValidationError("Nested object keys must be strings", path=path)
            _check_json_value(nested, f"{path}.{key}")
    elif kind is FieldType.ARRAY:
        for i, nested in enumerate(value):
            _check_json_value(nested, f"{path}[{i}]")


def validate_records(records: Any) -> list[dict[str, Any]]:
    """Validate that *records* is a list of string-keyed mappings of JSON values.

    Returns a list of plain ``dict`` copies preserving field order.
    """
    if not isinstance(records, list | tuple):
        raise ValidationError("Records must be a list of objects", received=type(records).__name__)

    validated: list[dict[str, Any]] = []
    for index, record in enumerate(records):
        if not isinstance(record, Mapping):
            raise ValidationError(
                "Every record must be an object",
                record_index=index,
                received=type(record).__name__,
            )
        for key, value in record.items():
            if not isinstance(key, str) or not key:
                raise ValidationError("Record field names must be non-empty strings", record_index=index)
            try:
                _check_json_value(value, key)
            except ValidationError as exc:
                exc.context.setdefault("record_index", index)
                raise
        validated.append(dict(record))
    return validated


def infer_schema(
    records: Iterable[Mapping[str, Any]],
    sample_size: int | None = None,
    *,
    strict: bool = True,
) -> tuple[list[SchemaField], list[str]]:
    """Infer the ordered column list of *records*.

    Parameters
    ----------
    records:
        Records to sample.  Columns appear in first-seen order.
    sample_size:
        Only the first *sample_size* records are inspected when given.
    strict:
        When ``True`` a column holding two different non-null value kinds
        raises :class:`SchemaInferenceError`.  When ``False`` such a column
        is coerced to ``string`` and a warning is returned instead.

    Returns
    -------
    tuple[list[SchemaField], list[str]]
        The inferred schema and any coercion warnings.

    Raises
    ------
    SchemaInferenceError
        If no records are supplied, or on inconsistent types in strict mode.
    """
    columns: dict[str, set[FieldType]] = {}
    present_counts: dict[str, int] = {}
    sampled = 0

    for record in records:
        if sample_size is not None and sampled >= sample_size:
            break
        sampled += 1
        for name, value in record.items():
            kinds = columns.setdefault(name, set())
            kinds.add(value_type(value))
            present_counts[name] = present_counts.get(name, 0) + 1

    if sampled == 0:
        raise SchemaInferenceError("Cannot infer a schema from an empty record list")

    schema: list[SchemaField] = []
    warnings: list[str] = []
    for name, kinds in columns.items():
        nullable = FieldType.NULL in kinds or present_counts[name] < sampled
        non_null = kinds - {FieldType.NULL}
        if not non_null:
            field_type = FieldType.NULL
            nullable = True
        elif len(non_null) == 1:
            field_type = next(iter(non_null))
        else:
            found = sorted(k.value for k in non_null)
            if strict:
                raise SchemaInferenceError(
                    f"Column {name!r} holds inconsistent value types: {', '.join(found)}",
                    field=name,
                    types=found,
                )
            field_type = FieldType.STRING
            warnings.append(f"Column '{name}' has mixed types ({', '.join(found)}); coerced to string")
        schema.append(SchemaField(name=name, type=field_type, nullable=nullable))

    return schema, warnings


def text_value(value: Any) -> str:
    """Render a non-null JSON value as text (booleans lower-case, containers as JSON)."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return str(value)
    return json.dumps(value, sort_keys=True)


def conform_to_schema(
    records: list[dict[str, Any]],
    schema: Iterable[SchemaField],
) -> tuple[list[dict[str, Any]], int]:
    """Convert non-null values of ``string`` columns to text.

    Lenient inference labels a mixed-type column ``string``; this makes the
    stored values agree with that label.  Returns the records (changed rows
    are copied) and the number of values converted.
    """
    string_columns = [f.name for f in schema if f.type is FieldType.STRING]
    if not string_columns:
        return records, 0

    converted = 0
    output: list[dict[str, Any]] = []
    for record in records:
        row = record
        for name in string_columns:
            value = record.get(name)
            if value is None or isinstance(value, str):
                continue
            if row is record:
                row = dict(record)
            row[name] = text_value(value)
            converted += 1
        output.append(row)
    return output, converted


def compute_checksum(records: Iterable[Mapping[str, Any]]) -> str:
    """Return the SHA-256 digest of the canonical JSON encoding of *records*."""
    hasher = hashlib.sha256()
    hasher.update(b"[")
    for i, record in enumerate(records):
        if i:
            hasher.update(b",")
        hasher.update(json.dumps(record, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))
    hasher.update(b"]")
    return hasher.hexdigest()
