"""
Computed column graph and materialization, without a database.
"""

import asyncio

import pytest

from agentable.exceptions import ComputedColumnError, DependencyCycleError, InvalidColumnError
from agentable.functions import registry
from agentable.functions.registry import FunctionConfig
from agentable.schemas.table import ColumnDefinition, ColumnType, ComputedSpec, OnError
from agentable.services.computed_service import (
    UPSTREAM_ERROR,
    coerce_value,
    computed_order,
    dependents_of,
    direct_dependents,
    materialize,
    materialize_many,
    validate_columns,
)


def stored(col_id, col_type="text", **kwargs):
    return ColumnDefinition(id=col_id, name=col_id, type=col_type, **kwargs)


def computed(col_id, function, inputs, params=None, col_type="text"):
    return ColumnDefinition(
        id=col_id,
        name=col_id,
        type=col_type,
        computed=ComputedSpec(function=function, inputs=inputs, params=params or {}),
    )


@pytest.fixture
def failing_function(monkeypatch):
    """Register 'explode', which raises for the value 'bad'."""
    def explode(value):
        if value == "bad":
            raise ValueError("cannot handle bad")
        return f"ok:{value}"

    monkeypatch.setitem(
        registry._function_registry,
        "explode",
        FunctionConfig(name="explode", description="test", executor=explode, return_type=ColumnType.TEXT),
    )


@pytest.fixture
def chain():
    """name -> shout = upper(name) -> size = length(shout)"""
    return [
        stored("name"),
        computed("shout", "upper", {"value": "name"}),
        computed("size", "length", {"value": "shout"}, col_type="number"),
    ]


# ═══════════════════════════════════════════════════════════════════════════
# Validation and ordering
# ═══════════════════════════════════════════════════════════════════════════


class TestValidation:
    """Column validation and dependency ordering."""

    def test_order_puts_inputs_before_dependents(self):
        columns = [
            stored("a"),
            computed("c", "upper", {"value": "b"}),
            computed("b", "lower", {"value": "a"}),
        ]
        assert [c.id for c in computed_order(columns)] == ["b", "c"]

    def test_order_keeps_definition_order_for_independent_columns(self):
        columns = [
            stored("a"),
            computed("z", "upper", {"value": "a"}),
            computed("y", "lower", {"value": "a"}),
        ]
        assert [c.id for c in computed_order(columns)] == ["z", "y"]

    def test_cycle_is_rejected(self):
        columns = [
            stored("a"),
            computed("b", "concat", {"a": "a", "b": "c"}),
            computed("c", "upper", {"value": "b"}),
        ]
        with pytest.raises(DependencyCycleError):
            validate_columns(columns)

    def test_self_reference_is_rejected(self):
        with pytest.raises(DependencyCycleError):
            validate_columns([stored("a"), computed("b", "upper", {"value": "b"})])

    def test_unknown_function_is_rejected(self):
        with pytest.raises(InvalidColumnError, match="unknown function"):
            validate_columns([stored("a"), computed("b", "no_such_function", {"value": "a"})])

    def test_unknown_input_column_is_rejected(self):
        with pytest.raises(InvalidColumnError, match="unknown column"):
            validate_columns([stored("a"), computed("b", "upper", {"value": "missing"})])

    def test_unaccepted_param_is_rejected(self):
        with pytest.raises(InvalidColumnError, match="does not accept"):
            validate_columns([stored("a"), computed("b", "upper", {"value": "a"}, params={"shout": True})])

    def test_missing_required_argument_is_rejected(self):
        with pytest.raises(InvalidColumnError, match="missing arguments"):
            validate_columns([stored("a"), computed("b", "concat", {"a": "a"})])

    def test_duplicate_names_are_rejected(self):
        with pytest.raises(InvalidColumnError, match="Duplicate column name"):
            validate_columns([
                ColumnDefinition(id="a", name="Title", type="text"),
                ColumnDefinition(id="b", name="title", type="text"),
            ])

    def test_computed_column_cannot_be_required(self):
        with pytest.raises(ValueError):
            ColumnDefinition(
                id="b", name="b", type="text", required=True,
                computed=ComputedSpec(function="upper", inputs={"value": "a"}),
            )

    def test_dependents(self, chain):
        assert dependents_of(chain, ["name"]) == {"shout", "size"}
        assert dependents_of(chain, ["shout"]) == {"size"}
        assert dependents_of(chain, ["size"]) == set()
        assert direct_dependents(chain, "name") == {"shout"}


# ═══════════════════════════════════════════════════════════════════════════
# Materialization
# ═══════════════════════════════════════════════════════════════════════════


class TestMaterialize:

    async def test_materialize_chain(self, chain):
        data, errors = await materialize(chain, {"name": "ab"})
        assert data == {"name": "ab", "shout": "AB", "size": 2}
        assert errors == {}

    async def test_null_input_propagates_without_error(self, chain):
        data, errors = await materialize(chain, {"name": None})
        assert data["shout"] is None
        assert data["size"] is None
        assert errors == {}

    async def test_ignore_records_error_and_marks_downstream(self, failing_function):
        columns = [
            stored("a"),
            computed("b", "explode", {"value": "a"}),
            computed("c", "upper", {"value": "b"}),
        ]
        data, errors = await materialize(columns, {"a": "bad"}, on_error=OnError.IGNORE)

        assert data["b"] is None and data["c"] is None
        assert errors["b"]["type"] == "ValueError"
        assert "cannot handle bad" in errors["b"]["message"]
        assert errors["c"]["type"] == UPSTREAM_ERROR

    async def test_abort_raises_with_column(self, failing_function):
        columns = [stored("a"), computed("b", "explode", {"value": "a"})]
        with pytest.raises(ComputedColumnError) as exc_info:
            await materialize(columns, {"a": "bad"}, on_error=OnError.ABORT)
        assert exc_info.value.column_id == "b"
        assert isinstance(exc_info.value.cause, ValueError)

    async def test_successful_recompute_clears_old_error(self, failing_function):
        columns = [stored("a"), computed("b", "explode", {"value": "a"})]
        data, errors = await materialize(
            columns, {"a": "good"}, errors={"b": {"type": "ValueError", "message": "old"}},
        )
        assert data["b"] == "ok:good"
        assert errors == {}

    async def test_only_limits_evaluation(self, chain):
        data, _ = await materialize(chain, {"name": "ab", "shout": "stale", "size": 99}, only={"size"})
        assert data["shout"] == "stale"
        assert data["size"] == 5

    async def test_formula_function(self):
        columns = [
            stored("price", "number"),
            stored("qty", "number"),
            computed("total", "formula", {"p": "price", "q": "qty"}, params={"formula": "{p} * {q}"}, col_type="number"),
        ]
        validate_columns(columns)
        data, errors = await materialize(columns, {"price": 2.5, "qty": 4})
        assert data["total"] == 10
        assert errors == {}

    async def test_json_path_over_stored_json(self):
        columns = [
            stored("response", "json"),
            computed("reply", "json_path", {"value": "response"}, params={"path": "content[0].text"}),
        ]
        data, _ = await materialize(columns, {"response": {"content": [{"type": "text", "text": "hi"}]}})
        assert data["reply"] == "hi"

    async def test_materialize_many_keeps_order_and_limits_concurrency(self, monkeypatch):
        active = 0
        peak = 0

        async def slow_upper(value):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return str(value).upper()

        monkeypatch.setitem(
            registry._function_registry,
            "slow_upper",
            FunctionConfig(name="slow_upper", description="test", executor=slow_upper, return_type=ColumnType.TEXT),
        )
        columns = [stored("a"), computed("b", "slow_upper", {"value": "a"})]
        rows = [({"a": f"row{i}"}, {}) for i in range(10)]

        results = await materialize_many(columns, rows, max_concurrent=3)

        assert [data["b"] for data, _ in results] == [f"ROW{i}" for i in range(10)]
        assert 1 < peak <= 3

    async def test_materialize_many_abort_raises(self, failing_function):
        columns = [stored("a"), computed("b", "explode", {"value": "a"})]
        with pytest.raises(ComputedColumnError):
            await materialize_many(columns, [({"a": "fine"}, {}), ({"a": "bad"}, {})])


# ═══════════════════════════════════════════════════════════════════════════
# Coercion
# ═══════════════════════════════════════════════════════════════════════════


class TestCoercion:

    def test_coerce_values(self):
        assert coerce_value("1,200", stored("n", "number")) == 1200
        assert coerce_value("2.5", stored("n", "number")) == 2.5
        assert coerce_value("yes", stored("b", "boolean")) is True
        assert coerce_value("03/15/2024", stored("d", "date")) == "2024-03-15"
        assert coerce_value({"k": 1}, stored("t", "text")) == '{"k": 1}'
        with pytest.raises(ValueError):
            coerce_value("maybe", stored("b", "boolean"))
        with pytest.raises(ValueError):
            coerce_value("purple", stored("s", "select", options=["red", "green"]))
