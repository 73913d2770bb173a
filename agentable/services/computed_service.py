"""
Computed Column Service - schema validation, dependency ordering and materialization.

A computed column names a registered function and maps each of the function's
input parameters to another column. The columns of a table therefore form a
dependency graph, which must stay acyclic. Materializing a row walks the
computed columns in topological order so every function sees up-to-date inputs.
"""

import asyncio
import inspect
import json
import logging
import uuid
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

from agentable.exceptions import ComputedColumnError, DependencyCycleError, InvalidColumnError
from agentable.functions import get_function
from agentable.schemas.table import ColumnDefinition, ColumnType, OnError

logger = logging.getLogger(__name__)

ColumnsLike = Iterable[Union[ColumnDefinition, Dict[str, Any]]]

DATE_FORMATS = [
    "%Y-%m-%d", "%m/%d/%Y", "%d/%m/%Y",
    "%Y-%m-%d %H:%M:%S", "%m/%d/%Y %H:%M:%S",
    "%Y/%m/%d", "%d-%m-%Y",
]

UPSTREAM_ERROR = "UpstreamError"


def generate_column_id() -> str:
    """Generate a stable column ID."""
    return f"col_{uuid.uuid4().hex[:8]}"


def as_columns(columns: ColumnsLike) -> List[ColumnDefinition]:
    """Normalize stored column dicts to ColumnDefinition objects."""
    return [
        c if isinstance(c, ColumnDefinition) else ColumnDefinition(**c)
        for c in columns
    ]


def dump_columns(columns: List[ColumnDefinition]) -> List[Dict[str, Any]]:
    """Serialize columns for the JSON column on TableDefinition."""
    return [c.model_dump(mode="json") for c in columns]


def resolve_column(columns: ColumnsLike, name_or_id: str) -> Optional[ColumnDefinition]:
    """Map a column name (case-insensitive) or ID to its definition."""
    cols = as_columns(columns)
    for col in cols:
        if col.id == name_or_id:
            return col
    for col in cols:
        if col.name.lower() == str(name_or_id).lower():
            return col
    return None


# =============================================================================
# Value Coercion
# =============================================================================

def coerce_value(value: Any, column: ColumnDefinition) -> Any:
    """
    Coerce a value to the column's type.

    Raises ValueError/TypeError when the value can't be represented.
    """
    if value is None:
        return None

    col_type = column.type

    if col_type == ColumnType.NUMBER:
        if isinstance(value, bool):
            raise TypeError("Boolean is not a number")
        if isinstance(value, (int, float)):
            return value
        cleaned = str(value).strip().replace(",", "")
        if not cleaned:
            return None
        if "." in cleaned or "e" in cleaned.lower():
            return float(cleaned)
        return int(cleaned)

    if col_type == ColumnType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)) and value in (0, 1):
            return bool(value)
        lowered = str(value).strip().lower()
        if lowered in ("true", "yes", "1", "y"):
            return True
        if lowered in ("false", "no", "0", "n"):
            return False
        raise ValueError(f"Cannot interpret {value!r} as a boolean")

    if col_type == ColumnType.DATE:
        if isinstance(value, datetime):
            return value.date().isoformat()
        if isinstance(value, date):
            return value.isoformat()
        raw = str(value).strip()
        for fmt in DATE_FORMATS:
            try:
                return datetime.strptime(raw, fmt).strftime("%Y-%m-%d")
            except ValueError:
                continue
        raise ValueError(f"Cannot interpret {value!r} as a date")

    if col_type == ColumnType.SELECT:
        text = str(value)
        if column.options and text not in column.options:
            raise ValueError(f"{text!r} is not one of: {', '.join(column.options)}")
        return text

    if col_type == ColumnType.JSON:
        json.dumps(value)  # Must be storable
        return value

    # text / image
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


# =============================================================================
# Schema Validation and Ordering
# =============================================================================

def _accepted_params(executor) -> Tuple[Set[str], bool]:
    """Return (named parameters, accepts **kwargs) for a function executor."""
    sig = inspect.signature(executor)
    names = set()
    var_kw = False
    for p in sig.parameters.values():
        if p.kind == inspect.Parameter.VAR_KEYWORD:
            var_kw = True
        elif p.kind in (inspect.Parameter.POSITIONAL_OR_KEYWORD, inspect.Parameter.KEYWORD_ONLY):
            names.add(p.name)
    return names, var_kw


def _required_params(executor) -> Set[str]:
    sig = inspect.signature(executor)
    return {
        p.name for p in sig.parameters.values()
        if p.default is inspect.Parameter.empty
        and p.kind in (inspect.Parameter.POSITIONAL_OR_KEYWORD, inspect.Parameter.KEYWORD_ONLY)
    }


def validate_columns(columns: ColumnsLike) -> List[ColumnDefinition]:
    """
    Validate a full table schema.

    Returns the columns in definition order. Raises InvalidColumnError or
    DependencyCycleError.
    """
    cols = as_columns(columns)
    if not cols:
        raise InvalidColumnError("A table needs at least one column")

    seen_ids: Set[str] = set()
    seen_names: Set[str] = set()
    for col in cols:
        if col.id in seen_ids:
            raise InvalidColumnError(f"Duplicate column ID: {col.id}")
        if col.name.lower() in seen_names:
            raise InvalidColumnError(f"Duplicate column name: {col.name}")
        seen_ids.add(col.id)
        seen_names.add(col.name.lower())

        if col.type == ColumnType.SELECT and col.options is not None and not col.options:
            raise InvalidColumnError(f"Select column {col.id} has an empty option list")

        if not col.is_computed and col.default is not None:
            try:
                coerce_value(col.default, col)
            except (ValueError, TypeError) as e:
                raise InvalidColumnError(f"Default for column {col.id} is invalid: {e}")

    for col in cols:
        if not col.is_computed:
            continue
        spec = col.computed
        fn = get_function(spec.function)
        if fn is None:
            raise InvalidColumnError(f"Column {col.id} uses unknown function '{spec.function}'")

        for param, source in spec.inputs.items():
            if source == col.id:
                raise DependencyCycleError([col.id])
            if source not in seen_ids:
                raise InvalidColumnError(
                    f"Column {col.id} input '{param}' references unknown column {source}"
                )

        overlap = set(spec.inputs) & set(spec.params)
        if overlap:
            raise InvalidColumnError(
                f"Column {col.id} sets {', '.join(sorted(overlap))} both as input and param"
            )

        names, var_kw = _accepted_params(fn.executor)
        supplied = set(spec.inputs) | set(spec.params)
        if not var_kw:
            unknown = supplied - names
            if unknown:
                raise InvalidColumnError(
                    f"Function '{fn.name}' does not accept: {', '.join(sorted(unknown))}"
                )
        missing = _required_params(fn.executor) - supplied
        if missing:
            raise InvalidColumnError(
                f"Column {col.id} is missing arguments for '{fn.name}': {', '.join(sorted(missing))}"
            )

    computed_order(cols)
    return cols


def computed_order(columns: ColumnsLike) -> List[ColumnDefinition]:
    """
    Topologically order computed columns so inputs come before dependents.

    Ties keep definition order. Raises DependencyCycleError.
    """
    cols = as_columns(columns)
    computed = [c for c in cols if c.is_computed]
    computed_ids = {c.id for c in computed}
    position = {c.id: i for i, c in enumerate(computed)}

    pending: Dict[str, Set[str]] = {
        c.id: {src for src in c.computed.inputs.values() if src in computed_ids}
        for c in computed
    }
    by_id = {c.id: c for c in computed}
    ordered: List[ColumnDefinition] = []

    while pending:
        ready = sorted((cid for cid, deps in pending.items() if not deps), key=position.get)
        if not ready:
            raise DependencyCycleError(sorted(pending, key=position.get))
        for cid in ready:
            ordered.append(by_id[cid])
            del pending[cid]
        for deps in pending.values():
            deps.difference_update(ready)

    return ordered


def dependents_of(columns: ColumnsLike, column_ids: Iterable[str]) -> Set[str]:
    """Transitive set of computed column IDs downstream of the given columns."""
    cols = as_columns(columns)
    frontier = set(column_ids)
    found: Set[str] = set()
    while frontier:
        nxt = set()
        for col in cols:
            if col.is_computed and col.id not in found:
                if frontier & set(col.computed.inputs.values()):
                    found.add(col.id)
                    nxt.add(col.id)
        frontier = nxt
    return found


def direct_dependents(columns: ColumnsLike, column_id: str) -> Set[str]:
    """Computed columns that read column_id directly."""
    return {
        c.id for c in as_columns(columns)
        if c.is_computed and column_id in c.computed.inputs.values()
    }


# =============================================================================
# Materialization
# =============================================================================

def _error_entry(exc: BaseException) -> Dict[str, str]:
    return {"type": type(exc).__name__, "message": str(exc)}


async def materialize(
    columns: ColumnsLike,
    data: Dict[str, Any],
    only: Optional[Iterable[str]] = None,
    on_error: OnError = OnError.ABORT,
    errors: Optional[Dict[str, Any]] = None,
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Evaluate computed columns for one row.

    Args:
        columns: Table column definitions
        data: Current row values keyed by column ID
        only: Restrict evaluation to these computed column IDs (default: all)
        on_error: ABORT raises ComputedColumnError; IGNORE stores null and records the error
        errors: Existing per-column errors for the row (entries for evaluated columns are replaced)

    Returns:
        Tuple of (data, errors), both new dicts
    """
    on_error = OnError(on_error)
    data = dict(data)
    errors = dict(errors or {})
    targets = set(only) if only is not None else None

    for col in computed_order(columns):
        if targets is not None and col.id not in targets:
            continue

        errors.pop(col.id, None)
        spec = col.computed
        fn = get_function(spec.function)
        if fn is None:
            # Function was unregistered after the schema was saved
            exc = InvalidColumnError(f"Unknown function '{spec.function}'")
            if on_error == OnError.ABORT:
                raise ComputedColumnError(col.id, exc)
            data[col.id] = None
            errors[col.id] = _error_entry(exc)
            continue

        failed_inputs = [src for src in spec.inputs.values() if src in errors]
        if failed_inputs:
            data[col.id] = None
            errors[col.id] = {
                "type": UPSTREAM_ERROR,
                "message": f"Input column {failed_inputs[0]} has an error",
            }
            continue

        kwargs = dict(spec.params)
        for param, source in spec.inputs.items():
            kwargs[param] = data.get(source)

        if not fn.null_safe and any(data.get(src) is None for src in spec.inputs.values()):
            data[col.id] = None
            continue

        try:
            result = await fn.call(**kwargs)
            data[col.id] = coerce_value(result, col)
        except Exception as e:
            if on_error == OnError.ABORT:
                logger.warning(f"Computed column {col.id} ({spec.function}) failed, aborting: {e}")
                raise ComputedColumnError(col.id, e) from e
            logger.warning(f"Computed column {col.id} ({spec.function}) failed, storing null: {e}")
            data[col.id] = None
            errors[col.id] = _error_entry(e)

    return data, errors


async def materialize_many(
    columns: ColumnsLike,
    rows: List[Tuple[Dict[str, Any], Dict[str, Any]]],
    only: Optional[Iterable[str]] = None,
    on_error: OnError = OnError.ABORT,
    max_concurrent: int = 8,
) -> List[Tuple[Dict[str, Any], Dict[str, Any]]]:
    """
    Materialize several rows concurrently (model calls dominate the cost).

    rows is a list of (data, errors). Results keep input order. Under ABORT the
    first failure (in row order) is raised after all rows have settled.
    """
    cols = as_columns(columns)
    only_set = set(only) if only is not None else None
    semaphore = asyncio.Semaphore(max_concurrent)

    async def _one(data, errs):
        async with semaphore:
            return await materialize(cols, data, only=only_set, on_error=on_error, errors=errs)

    results = await asyncio.gather(
        *[_one(data, errs) for data, errs in rows],
        return_exceptions=True,
    )
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return list(results)
