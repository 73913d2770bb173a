"""
Table tools: let an agent read and write managed tables and define computed
columns on them.

Tables are addressed by name with the "table" parameter. When it is omitted
the tool uses context["table_id"], so a conversation can be scoped to one
table. Columns are addressed by name (or ID).

Expected failures (missing table, bad column, rejected write) are returned
to the model as "Error: ..." text so it can correct itself; only unexpected
exceptions surface as tool errors.
"""

import functools
import json
import logging
from typing import Any, AsyncGenerator, Dict, List, Union

from sqlalchemy.ext.asyncio import AsyncSession

from agentable.exceptions import AppError
from agentable.functions import get_function
from agentable.models import TableDefinition, TableRow
from agentable.schemas.table import ColumnDefinition, ComputedSpec, OnError
from agentable.services.computed_service import as_columns, generate_column_id, resolve_column
from agentable.services.row_service import RowService
from agentable.services.table_service import TableService
from agentable.tools.registry import ToolProgress, ToolResult, tool

logger = logging.getLogger(__name__)

MAX_QUERY_ROWS = 50
INSERT_BATCH_SIZE = 10

TABLE_PARAM = {
    "type": "string",
    "description": "Table name. Optional when the conversation is scoped to a table.",
}


class ToolInputError(Exception):
    """Bad tool arguments; reported back to the model as text."""


def _schema(properties: Dict[str, Any], required: List[str] = ()) -> Dict[str, Any]:
    schema: Dict[str, Any] = {"type": "object", "properties": {"table": TABLE_PARAM, **properties}}
    if required:
        schema["required"] = list(required)
    return schema


def _error_text(e: Exception) -> str:
    return f"Error: {e.message if isinstance(e, AppError) else e}"


def reports_errors(fn):
    @functools.wraps(fn)
    async def wrapper(params, db, context):
        try:
            return await fn(params, db, context)
        except (ToolInputError, AppError) as e:
            return _error_text(e)
    return wrapper


async def _target_table(params: Dict[str, Any], db: AsyncSession, context: Dict[str, Any]) -> TableDefinition:
    tables = TableService(db)
    if params.get("table"):
        table = await tables.find(params["table"])
        if table is None:
            raise ToolInputError(f"Table '{params['table']}' not found.")
        return table
    if context.get("table_id"):
        return await tables.get(context["table_id"])
    raise ToolInputError("No table specified. Pass the table name.")


def _column_id(table: TableDefinition, ref: str, what: str) -> str:
    col = resolve_column(table.columns, ref)
    if col is None:
        raise ToolInputError(f"Unknown {what}: {ref}")
    return col.id


def _required(params: Dict[str, Any], key: str, hint: str = "") -> Any:
    value = params.get(key)
    if not value:
        raise ToolInputError(f"{key} is required.{' ' + hint if hint else ''}")
    return value


def row_record(table: TableDefinition, row: TableRow) -> Dict[str, Any]:
    """A row as the model sees it: row_id, values by column name, and any computed column errors."""
    record = {"row_id": row.id, **RowService.to_named(table, row)}
    if row.errors:
        names = {c.id: c.name for c in as_columns(table.columns)}
        record["_errors"] = {names.get(k, k): v["message"] for k, v in row.errors.items()}
    return record


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


# =============================================================================
# Reading
# =============================================================================

@tool(
    "list_tables",
    "List all tables with their row and column counts.",
    {"type": "object", "properties": {}},
    category="table_data",
)
@reports_errors
async def list_tables(params: Dict[str, Any], db: AsyncSession, context: Dict[str, Any]) -> ToolResult:
    tables = await TableService(db).list()
    summary = [{"id": t["id"], "name": t["name"], "rows": t["row_count"]} for t in tables]
    if not tables:
        return ToolResult(text="There are no tables yet.", data=summary)

    lines = []
    for t in tables:
        line = f"- {t['name']}: {t['row_count']} rows, {t['column_count']} columns"
        if t["computed_column_count"]:
            line += f" ({t['computed_column_count']} computed)"
        if t["description"]:
            line += f". {t['description']}"
        lines.append(line)
    return ToolResult(text="Tables:\n" + "\n".join(lines), data=summary)


@tool(
    "describe_table",
    "Show a table's columns, their types, and how computed columns are derived.",
    _schema({}),
    category="table_data",
)
@reports_errors
async def describe_table(params: Dict[str, Any], db: AsyncSession, context: Dict[str, Any]) -> str:
    table = await _target_table(params, db, context)
    row_count = await TableService(db).get_row_count(table.id)
    columns = as_columns(table.columns)
    names = {c.id: c.name for c in columns}

    lines = [f"Table '{table.name}' ({row_count} rows)"]
    if table.description:
        lines.append(table.description)
    for col in columns:
        parts = [f"- {col.name} ({col.type.value})"]
        if col.options:
            parts.append(f"options: {', '.join(col.options)}")
        if col.required:
            parts.append("required")
        if col.is_computed:
            args = ", ".join(f"{p}={names.get(src, src)}" for p, src in col.computed.inputs.items())
            parts.append(f"computed: {col.computed.function}({args})")
        lines.append(" ".join(parts))
    return "\n".join(lines)


@tool(
    "query_rows",
    "Read rows from a table. Filter by column name with "
    "{\"Column\": {\"operator\": \"equals|contains|gt|lt|gte|lte|is_true|is_false|is_empty|is_not_empty\", "
    "\"value\": ...}} or {\"Column\": value} for equality.",
    _schema({
        "filters": {"type": "object", "description": "Column name -> {operator, value}"},
        "sort_column": {"type": "string", "description": "Column name to sort by"},
        "sort_direction": {"type": "string", "enum": ["asc", "desc"]},
        "limit": {"type": "integer", "description": f"Max rows to return (1-{MAX_QUERY_ROWS})"},
        "offset": {"type": "integer"},
    }),
    category="table_data",
)
@reports_errors
async def query_rows(params: Dict[str, Any], db: AsyncSession, context: Dict[str, Any]) -> ToolResult:
    table = await _target_table(params, db, context)
    filters = {
        _column_id(table, ref, "column in filter"): spec
        for ref, spec in (params.get("filters") or {}).items()
    }
    sort_column = None
    if params.get("sort_column"):
        sort_column = _column_id(table, params["sort_column"], "sort column")

    rows, total = await RowService(db).list(
        table_id=table.id,
        limit=max(1, min(int(params.get("limit", 20)), MAX_QUERY_ROWS)),
        offset=int(params.get("offset", 0)),
        sort_column=sort_column,
        sort_direction=params.get("sort_direction", "asc"),
        filters=filters,
    )
    records = [row_record(table, r) for r in rows]
    return ToolResult(
        text=f"{total} matching rows, showing {len(records)}:\n{_dumps(records)}",
        data={"total": total, "rows": records},
    )


@tool(
    "search_rows",
    "Full-text search across the text columns of a table.",
    _schema({"query": {"type": "string", "description": "Text to search for"}}, required=["query"]),
    category="table_data",
)
@reports_errors
async def search_rows(params: Dict[str, Any], db: AsyncSession, context: Dict[str, Any]) -> str:
    table = await _target_table(params, db, context)
    query = (params.get("query") or "").strip()
    if not query:
        raise ToolInputError("query is required.")

    rows = await RowService(db).search(table.id, query, table.columns, limit=MAX_QUERY_ROWS)
    if not rows:
        return f"No rows in '{table.name}' match '{query}'."
    return f"{len(rows)} rows match '{query}':\n{_dumps([row_record(table, r) for r in rows])}"


# =============================================================================
# Writing
# =============================================================================

@tool(
    "insert_row",
    "Insert a row. Provide values keyed by column name. Computed columns fill in automatically.",
    _schema({"values": {"type": "object", "description": "Column name -> value"}}, required=["values"]),
    category="table_data",
)
@reports_errors
async def insert_row(params: Dict[str, Any], db: AsyncSession, context: Dict[str, Any]) -> str:
    table = await _target_table(params, db, context)
    values = _required(params, "values", "Provide column_name: value pairs.")

    rows = RowService(db)
    row = await rows.create(table, rows.named_to_ids(table, values), on_error=OnError.IGNORE)
    return f"Inserted row #{row.id}: {_dumps(row_record(table, row))}"


@tool(
    "insert_rows",
    "Insert many rows at once. Each row is an object keyed by column name.",
    _schema({"rows": {"type": "array", "items": {"type": "object"}}}, required=["rows"]),
    category="table_data",
)
async def insert_rows(
    params: Dict[str, Any],
    db: AsyncSession,
    context: Dict[str, Any],
) -> AsyncGenerator[Union[ToolProgress, ToolResult], None]:
    """Inserts in batches of INSERT_BATCH_SIZE, reporting progress after each batch."""
    rows = RowService(db)
    try:
        table = await _target_table(params, db, context)
        pending = [rows.named_to_ids(table, values) for values in _required(params, "rows")]
    except (ToolInputError, AppError) as e:
        yield ToolResult(text=_error_text(e))
        return

    inserted: List[int] = []
    for start in range(0, len(pending), INSERT_BATCH_SIZE):
        try:
            created = await rows.create_many(
                table, pending[start:start + INSERT_BATCH_SIZE], on_error=OnError.IGNORE
            )
        except AppError as e:
            yield ToolResult(
                text=f"Error after inserting {len(inserted)} rows: {e.message}",
                data={"row_ids": inserted},
            )
            return
        inserted.extend(r.id for r in created)
        yield ToolProgress(
            stage="inserting",
            message=f"Inserted {len(inserted)} of {len(pending)} rows",
            progress=len(inserted) / len(pending),
        )

    yield ToolResult(text=f"Inserted {len(inserted)} rows into '{table.name}'.", data={"row_ids": inserted})


@tool(
    "update_row",
    "Update values in an existing row by row_id. Computed columns that depend on them are recomputed.",
    _schema({
        "row_id": {"type": "integer"},
        "values": {"type": "object", "description": "Column name -> new value"},
    }, required=["row_id", "values"]),
    category="table_data",
)
@reports_errors
async def update_row(params: Dict[str, Any], db: AsyncSession, context: Dict[str, Any]) -> str:
    table = await _target_table(params, db, context)
    row_id = int(_required(params, "row_id"))
    values = _required(params, "values")

    rows = RowService(db)
    row = await rows.update(table, row_id, rows.named_to_ids(table, values), on_error=OnError.IGNORE)
    return f"Updated row #{row.id}: {_dumps(row_record(table, row))}"


@tool(
    "delete_row",
    "Delete a row by row_id.",
    _schema({"row_id": {"type": "integer"}}, required=["row_id"]),
    category="table_data",
)
@reports_errors
async def delete_row(params: Dict[str, Any], db: AsyncSession, context: Dict[str, Any]) -> str:
    table = await _target_table(params, db, context)
    row_id = int(_required(params, "row_id"))
    await RowService(db).delete(table.id, row_id)
    return f"Deleted row #{row_id}."


# =============================================================================
# Schema
# =============================================================================

@tool(
    "add_computed_column",
    "Add a computed column whose value is derived from other columns by a registered function "
    "(e.g. 'anthropic.text' with inputs {\"prompt\": \"Question\"}, or 'formula' with "
    "params {\"formula\": \"{price} * {qty}\"} and inputs {\"price\": \"Price\", \"qty\": \"Quantity\"}). "
    "The column is computed for all existing rows.",
    _schema({
        "name": {"type": "string", "description": "New column name"},
        "function": {"type": "string", "description": "Registered function name"},
        "inputs": {"type": "object", "description": "Function parameter -> source column name"},
        "params": {"type": "object", "description": "Literal function arguments"},
        "type": {"type": "string", "description": "Override the column type"},
        "options": {"type": "array", "items": {"type": "string"}},
    }, required=["name", "function"]),
    category="schema",
    is_global=False,
)
@reports_errors
async def add_computed_column(params: Dict[str, Any], db: AsyncSession, context: Dict[str, Any]) -> str:
    table = await _target_table(params, db, context)
    name = (params.get("name") or "").strip()
    if not name or not params.get("function"):
        raise ToolInputError("name and function are required.")

    fn = get_function(params["function"])
    if fn is None:
        raise ToolInputError(f"Unknown function '{params['function']}'.")

    inputs = {}
    for param, ref in (params.get("inputs") or {}).items():
        col = resolve_column(table.columns, ref)
        if col is None:
            raise ToolInputError(f"Unknown column '{ref}' for input '{param}'.")
        inputs[param] = col.id

    column = ColumnDefinition(
        id=generate_column_id(),
        name=name,
        type=params.get("type") or fn.return_type,
        options=params.get("options"),
        computed=ComputedSpec(function=fn.name, inputs=inputs, params=params.get("params") or {}),
    )
    tables = TableService(db)
    table = await tables.add_column(table.id, column, on_error=OnError.IGNORE)
    row_count = await tables.get_row_count(table.id)
    logger.info(f"Agent added computed column '{name}' ({fn.name}) to table {table.id}")
    return f"Added computed column '{name}' ({fn.name}) to '{table.name}' and computed it for {row_count} rows."
