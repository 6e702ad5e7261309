"""Unit tests for the pipeline step implementations."""

from __future__ import annotations

from typing import Any

import pytest

from tabula_engine.cancellation import CancellationToken
from tabula_engine.config import Settings
from tabula_engine.errors import AmbiguousKeyError, ExecutionCancelledError, ValidationError
from tabula_engine.models.pipeline import (
    AggregateStep,
    DeduplicateStep,
    FilterStep,
    JoinStep,
    MapStep,
    Predicate,
    SortStep,
)
from tabula_engine.pipeline.steps import StepContext, evaluate_predicate, execute_step

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def context(settings: Settings) -> StepContext:
    return StepContext(settings=settings)


def _right_loader(records: list[dict[str, Any]], snapshot_id: str = "right-snap"):
    async def _load(data_source_id: str, pinned: str | None) -> tuple[str, list[dict[str, Any]]]:
        return pinned or snapshot_id, [dict(r) for r in records]

    return _load


def _pred(field: str, operator: str, value: Any = None) -> Predicate:
    return Predicate(field=field, operator=operator, value=value)


# ---------------------------------------------------------------------------
# filter
# ---------------------------------------------------------------------------


class TestFilter:
    @pytest.mark.parametrize(
        ("predicate", "record", "expected"),
        [
            (("age", "equals", 20), {"age": 20}, True),
            (("age", "equals", 20), {"age": "20"}, False),
            (("age", "not_equals", 20), {"age": 21}, True),
            (("age", "greater_than", 18), {"age": 20}, True),
            (("age", "greater_than", 18), {"age": None}, False),
            (("age", "greater_than_or_equal", 20), {"age": 20}, True),
            (("age", "less_than", 18), {"age": 15}, True),
            (("age", "less_than_or_equal", 15), {"age": 16}, False),
            (("name", "contains", "li"), {"name": "Alice"}, True),
            (("tags", "contains", "x"), {"tags": ["x", "y"]}, True),
            (("name", "starts_with", "Al"), {"name": "Alice"}, True),
            (("name", "ends_with", "ce"), {"name": "Alice"}, True),
            (("name", "ends_with", "ce"), {}, False),
            (("c", "in", ["a", "b"]), {"c": "b"}, True),
            (("c", "not_in", ["a", "b"]), {"c": "z"}, True),
            (("c", "is_null"), {}, True),
            (("c", "is_null"), {"c": None}, True),
            (("c", "is_not_null"), {"c": 0}, True),
        ],
    )
    def test_operators(self, predicate: tuple, record: dict, expected: bool) -> None:
        assert evaluate_predicate(record, _pred(*predicate)) is expected

    def test_ordering_across_types_raises(self) -> None:
        with pytest.raises(ValidationError):
            evaluate_predicate({"age": "old"}, _pred("age", "greater_than", 18))

    def test_in_requires_list(self) -> None:
        with pytest.raises(ValidationError):
            evaluate_predicate({"c": "a"}, _pred("c", "in", "abc"))

    @pytest.mark.asyncio
    async def test_predicates_are_and_combined(self, context: StepContext) -> None:
        records = [{"age": 20, "city": "Oslo"}, {"age": 30, "city": "Rome"}, {"age": 15, "city": "Oslo"}]
        step = FilterStep(predicates=[_pred("age", "greater_than", 18), _pred("city", "equals", "Oslo")])
        output = await execute_step(step, records, context)
        assert output.records == [{"age": 20, "city": "Oslo"}]

    @pytest.mark.asyncio
    async def test_no_predicates_keeps_everything(self, context: StepContext) -> None:
        records = [{"a": i} for i in range(5)]
        output = await execute_step(FilterStep(), records, context)
        assert output.records == records


# ---------------------------------------------------------------------------
# map
# ---------------------------------------------------------------------------


class TestMap:
    @pytest.mark.asyncio
    async def test_transforms(self, context: StepContext) -> None:
        step = MapStep.model_validate(
            {
                "mappings": [
                    {"source_field": "name", "target_field": "upper", "transform": "to_uppercase"},
                    {"source_field": "amount", "target_field": "amount", "transform": "to_number"},
                    {"source_field": "flag", "target_field": "flag", "transform": "to_boolean"},
                    {"source_field": "id", "target_field": "id_text", "transform": "to_string"},
                ]
            }
        )
        records = [{"id": 7, "name": " bob ", "amount": "12.5", "flag": "yes"}]
        output = await execute_step(step, records, context)
        row = output.records[0]
        assert row["upper"] == " BOB "
        assert row["amount"] == 12.5
        assert row["flag"] is True
        assert row["id_text"] == "7"
        assert output.warnings == []

    @pytest.mark.asyncio
    async def test_failed_coercion_becomes_null_with_warning(self, context: StepContext) -> None:
        step = MapStep.model_validate(
            {"mappings": [{"source_field": "amount", "target_field": "amount", "transform": "to_number"}]}
        )
        records = [{"amount": "12"}, {"amount": "n/a"}, {"amount": "oops"}]
        output = await execute_step(step, records, context)
        assert [r["amount"] for r in output.records] == [12, None, None]
        assert len(output.warnings) == 1
        assert output.warnings[0].startswith("2 value(s) of 'amount'")

    @pytest.mark.asyncio
    async def test_rename_drop_and_default(self, context: StepContext) -> None:
        step = MapStep.model_validate(
            {
                "mappings": [
                    {"source_field": "fname", "target_field": "first_name"},
                    {"target_field": "country", "default": "NO"},
                ],
                "drop_fields": ["secret"],
                "rename": True,
            }
        )
        records = [{"fname": "Ada", "secret": "x", "age": 36}]
        output = await execute_step(step, records, context)
        assert output.records == [{"age": 36, "first_name": "Ada", "country": "NO"}]

    @pytest.mark.asyncio
    async def test_keep_unmapped_false(self, context: StepContext) -> None:
        step = MapStep.model_validate(
            {"mappings": [{"source_field": "a", "target_field": "b"}], "keep_unmapped": False}
        )
        output = await execute_step(step, [{"a": 1, "c": 2}], context)
        assert output.records == [{"b": 1}]

    @pytest.mark.asyncio
    async def test_input_not_mutated(self, context: StepContext) -> None:
        records = [{"a": "x"}]
        step = MapStep.model_validate({"mappings": [{"source_field": "a", "target_field": "a", "transform": "to_uppercase"}]})
        await execute_step(step, records, context)
        assert records == [{"a": "x"}]


# ---------------------------------------------------------------------------
# sort
# ---------------------------------------------------------------------------


class TestSort:
    @pytest.mark.asyncio
    async def test_filter_then_sort_scenario(self, context: StepContext) -> None:
        records = [{"name": "Bob", "age": 15}, {"name": "Al", "age": 20}]
        filtered = await execute_step(FilterStep(predicates=[_pred("age", "greater_than", 18)]), records, context)
        output = await execute_step(SortStep.model_validate({"field": "name"}), filtered.records, context)
        assert output.records == [{"name": "Al", "age": 20}]

    @pytest.mark.asyncio
    async def test_nulls_last_in_both_directions(self, context: StepContext) -> None:
        records = [{"v": 2}, {"v": None}, {"v": 1}, {}]
        asc = await execute_step(SortStep.model_validate({"field": "v"}), records, context)
        desc = await execute_step(SortStep.model_validate({"field": "v", "direction": "desc"}), records, context)
        assert [r.get("v") for r in asc.records] == [1, 2, None, None]
        assert [r.get("v") for r in desc.records] == [2, 1, None, None]

    @pytest.mark.asyncio
    async def test_multi_key_is_stable(self, context: StepContext) -> None:
        records = [
            {"dept": "b", "age": 30, "n": 1},
            {"dept": "a", "age": 30, "n": 2},
            {"dept": "a", "age": 25, "n": 3},
            {"dept": "a", "age": 30, "n": 4},
        ]
        step = SortStep.model_validate(
            {"fields": [{"field": "dept"}, {"field": "age", "direction": "desc"}]}
        )
        output = await execute_step(step, records, context)
        assert [r["n"] for r in output.records] == [2, 4, 3, 1]

    @pytest.mark.asyncio
    async def test_mixed_types_raise(self, context: StepContext) -> None:
        with pytest.raises(ValidationError):
            await execute_step(SortStep.model_validate({"field": "v"}), [{"v": 1}, {"v": "a"}], context)


# ---------------------------------------------------------------------------
# aggregate
# ---------------------------------------------------------------------------


class TestAggregate:
    @pytest.mark.asyncio
    async def test_group_sum_scenario(self, context: StepContext) -> None:
        step = AggregateStep.model_validate(
            {"group_by": "category", "aggregations": [{"field": "amount", "function": "sum"}]}
        )
        records = [{"category": "x", "amount": 5}, {"category": "x", "amount": 7}]
        output = await execute_step(step, records, context)
        assert output.records == [{"category": "x", "amount": 12}]

    @pytest.mark.asyncio
    async def test_all_functions_with_nulls(self, context: StepContext) -> None:
        step = AggregateStep.model_validate(
            {
                "group_by": ["g"],
                "aggregations": [
                    {"field": "v", "function": "count", "alias": "n"},
                    {"field": "v", "function": "sum", "alias": "total"},
                    {"field": "v", "function": "avg", "alias": "mean"},
                    {"field": "v", "function": "min", "alias": "lo"},
                    {"field": "v", "function": "max", "alias": "hi"},
                ],
            }
        )
        records = [
            {"g": "a", "v": 1},
            {"g": "b", "v": None},
            {"g": "a", "v": 3},
            {"g": "a", "v": None},
        ]
        output = await execute_step(step, records, context)
        assert output.records == [
            {"g": "a", "n": 3, "total": 4, "mean": 2.0, "lo": 1, "hi": 3},
            {"g": "b", "n": 1, "total": 0, "mean": None, "lo": None, "hi": None},
        ]

    @pytest.mark.asyncio
    async def test_no_group_by_on_empty_input(self, context: StepContext) -> None:
        step = AggregateStep.model_validate({"aggregations": [{"field": "v", "function": "count"}]})
        output = await execute_step(step, [], context)
        assert output.records == [{"v": 0}]

    @pytest.mark.asyncio
    async def test_sum_of_strings_raises(self, context: StepContext) -> None:
        step = AggregateStep.model_validate({"aggregations": [{"field": "v", "function": "sum"}]})
        with pytest.raises(ValidationError):
            await execute_step(step, [{"v": "x"}], context)


# ---------------------------------------------------------------------------
# join
# ---------------------------------------------------------------------------

_LEFT = [{"id": 1, "name": "A", "city": None}, {"id": 2, "name": "B", "city": "Oslo"}, {"id": 4, "name": "D"}]
_RIGHT = [{"id": 1, "name": "A1", "city": "Rome"}, {"id": 2, "city": None}, {"id": 3, "name": "C"}]


class TestJoin:
    def _context(self, settings: Settings, right: list[dict[str, Any]] = _RIGHT) -> StepContext:
        return StepContext(settings=settings, load_right=_right_loader(right))

    @pytest.mark.asyncio
    async def test_inner_merge_right_wins_when_both_non_null(self, settings: Settings) -> None:
        step = JoinStep(right_data_source_id="r", key=["id"])
        context = self._context(settings)
        output = await execute_step(step, _LEFT, context)
        assert output.records == [
            {"id": 1, "name": "A1", "city": "Rome"},
            {"id": 2, "name": "B", "city": "Oslo"},
        ]
        assert context.extra_input_snapshot_ids == ["right-snap"]

    @pytest.mark.asyncio
    async def test_left_resolution(self, settings: Settings) -> None:
        step = JoinStep(right_data_source_id="r", key="id", conflict_resolution="left")
        output = await execute_step(step, _LEFT, self._context(settings))
        assert output.records[0] == {"id": 1, "name": "A", "city": None}

    @pytest.mark.asyncio
    async def test_right_resolution(self, settings: Settings) -> None:
        step = JoinStep(right_data_source_id="r", key="id", conflict_resolution="right")
        output = await execute_step(step, _LEFT, self._context(settings))
        assert output.records[1] == {"id": 2, "name": "B", "city": None}

    @pytest.mark.asyncio
    async def test_error_resolution(self, settings: Settings) -> None:
        step = JoinStep(right_data_source_id="r", key="id", conflict_resolution="error")
        with pytest.raises(ValidationError):
            await execute_step(step, _LEFT, self._context(settings))

    @pytest.mark.asyncio
    async def test_left_and_outer(self, settings: Settings) -> None:
        left = await execute_step(
            JoinStep(right_data_source_id="r", key="id", merge_type="left"), _LEFT, self._context(settings)
        )
        outer = await execute_step(
            JoinStep(right_data_source_id="r", key="id", merge_type="outer"), _LEFT, self._context(settings)
        )
        right = await execute_step(
            JoinStep(right_data_source_id="r", key="id", merge_type="right"), _LEFT, self._context(settings)
        )
        assert [r["id"] for r in left.records] == [1, 2, 4]
        assert [r["id"] for r in outer.records] == [1, 2, 4, 3]
        assert [r["id"] for r in right.records] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_union_stacks_left_then_right(self, settings: Settings) -> None:
        step = JoinStep(right_data_source_id="r", key="id", merge_type="union")
        output = await execute_step(step, _LEFT, self._context(settings))
        assert len(output.records) == len(_LEFT) + len(_RIGHT)
        assert output.records[0] == _LEFT[0]
        assert output.records[-1] == _RIGHT[-1]

    @pytest.mark.asyncio
    async def test_null_keys_never_match(self, settings: Settings) -> None:
        step = JoinStep(right_data_source_id="r", key="id")
        context = self._context(settings, right=[{"id": None, "x": 1}])
        output = await execute_step(step, [{"id": None, "y": 2}], context)
        assert output.records == []

    @pytest.mark.asyncio
    async def test_duplicate_right_keys_raise(self, settings: Settings) -> None:
        step = JoinStep(right_data_source_id="r", key="id")
        context = self._context(settings, right=[{"id": 1}, {"id": 1}])
        with pytest.raises(AmbiguousKeyError):
            await execute_step(step, _LEFT, context)

    @pytest.mark.asyncio
    async def test_requires_loader(self, context: StepContext) -> None:
        with pytest.raises(ValidationError):
            await execute_step(JoinStep(right_data_source_id="r", key="id"), _LEFT, context)


# ---------------------------------------------------------------------------
# deduplicate
# ---------------------------------------------------------------------------


class TestDeduplicate:
    _RECORDS = [
        {"id": 1, "v": "a"},
        {"id": 2, "v": "b"},
        {"id": 1, "v": "c"},
        {"id": 2, "v": "b"},
    ]

    @pytest.mark.asyncio
    async def test_keep_first_by_key(self, context: StepContext) -> None:
        output = await execute_step(DeduplicateStep(key="id"), self._RECORDS, context)
        assert output.records == [{"id": 1, "v": "a"}, {"id": 2, "v": "b"}]

    @pytest.mark.asyncio
    async def test_keep_last_by_key_preserves_order(self, context: StepContext) -> None:
        output = await execute_step(DeduplicateStep(key=["id"], keep="last"), self._RECORDS, context)
        assert output.records == [{"id": 1, "v": "c"}, {"id": 2, "v": "b"}]

    @pytest.mark.asyncio
    async def test_whole_row_identity(self, context: StepContext) -> None:
        output = await execute_step(DeduplicateStep(), self._RECORDS, context)
        assert output.records == self._RECORDS[:3]


# ---------------------------------------------------------------------------
# cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_between_batches(self, settings: Settings) -> None:
        token = CancellationToken()
        seen: list[int] = []

        class _CountingDict(dict):
            def get(self, key, default=None):  # type: ignore[override]
                seen.append(self["i"])
                if self["i"] == 1:
                    token.cancel()
                return super().get(key, default)

        records = [_CountingDict(i=i) for i in range(6)]
        context = StepContext(settings=settings, cancel_token=token)
        with pytest.raises(ExecutionCancelledError):
            await execute_step(FilterStep(predicates=[_pred("i", "is_not_null")]), records, context)
        # The first batch of two finishes; the next batch is never started.
        assert seen == [0, 1]
