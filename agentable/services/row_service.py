"""
Row Service - CRUD operations for table rows with filtering, sorting, and pagination.

Every write goes through the computed column materializer, so computed
values always reflect the stored inputs.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, delete, or_
from typing import Optional, List, Dict, Any, Tuple
from fastapi import Depends
import logging

from agentable.config.settings import settings
from agentable.database import get_async_db
from agentable.exceptions import InvalidColumnError, RowLimitError, RowNotFoundError, ValidationError
from agentable.models import TableRow, TableDefinition
from agentable.schemas.table import ColumnDefinition, ColumnType, OnError
from agentable.services.computed_service import (
    as_columns,
    coerce_value,
    dependents_of,
    materialize,
    materialize_many,
    resolve_column,
)

logger = logging.getLogger(__name__)


def _contains_pattern(value: Any) -> str:
    """LIKE pattern matching `value` literally anywhere in the field."""
    escaped = str(value).replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class RowService:
    """Service for table row CRUD operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # =========================================================================
    # Input preparation
    # =========================================================================

    def prepare_values(
        self,
        columns: List[ColumnDefinition],
        values: Dict[str, Any],
        partial: bool = False,
    ) -> Dict[str, Any]:
        """
        Validate and coerce caller-supplied values keyed by column ID.

        Rejects unknown columns and computed columns. For full inserts
        (partial=False) applies defaults and enforces required columns.
        """
        by_id = {c.id: c for c in columns}
        prepared: Dict[str, Any] = {}

        for col_id, value in values.items():
            col = by_id.get(col_id)
            if col is None:
                available = ", ".join(c.id for c in columns if not c.is_computed)
                raise InvalidColumnError(f"Unknown column: {col_id}. Available columns: {available}")
            if col.is_computed:
                raise InvalidColumnError(f"Column {col_id} is computed and cannot be written")
            try:
                prepared[col_id] = coerce_value(value, col)
            except (ValueError, TypeError) as e:
                raise ValidationError(f"Invalid value for column {col.name}: {e}")

        if not partial:
            for col in columns:
                if col.is_computed:
                    continue
                if prepared.get(col.id) is None and col.default is not None:
                    prepared[col.id] = coerce_value(col.default, col)
                if col.required and prepared.get(col.id) in (None, ""):
                    raise ValidationError(f"Column {col.name} is required")
        else:
            for col_id, value in prepared.items():
                col = by_id[col_id]
                if col.required and value in (None, ""):
                    raise ValidationError(f"Column {col.name} is required")

        return prepared

    async def _check_capacity(self, table_id: int, adding: int) -> None:
        count_result = await self.db.execute(
            select(func.count(TableRow.id)).where(TableRow.table_id == table_id)
        )
        current = count_result.scalar() or 0
        if current + adding > settings.MAX_ROWS_PER_TABLE:
            raise RowLimitError(table_id, settings.MAX_ROWS_PER_TABLE)

    # =========================================================================
    # CRUD
    # =========================================================================

    async def create(
        self,
        table: TableDefinition,
        values: Dict[str, Any],
        on_error: OnError = OnError.ABORT,
        enforce_limit: bool = True,
    ) -> TableRow:
        """Insert a row and materialize its computed columns."""
        rows = await self.create_many(table, [values], on_error=on_error, enforce_limit=enforce_limit)
        return rows[0]

    async def create_many(
        self,
        table: TableDefinition,
        rows_values: List[Dict[str, Any]],
        on_error: OnError = OnError.ABORT,
        enforce_limit: bool = True,
    ) -> List[TableRow]:
        """
        Insert several rows in one transaction.

        Under ABORT, a computed column failure in any row inserts nothing.
        With enforce_limit=False the MAX_ROWS_PER_TABLE cap is skipped; agent
        memory and tool log tables are append-only and insert this way.
        """
        if not rows_values:
            return []

        columns = as_columns(table.columns)
        prepared = [self.prepare_values(columns, values) for values in rows_values]
        if enforce_limit:
            await self._check_capacity(table.id, len(prepared))

        results = await materialize_many(
            columns,
            [(data, {}) for data in prepared],
            on_error=on_error,
        )

        new_rows = [
            TableRow(table_id=table.id, data=data, errors=errors)
            for data, errors in results
        ]
        self.db.add_all(new_rows)
        await self.db.commit()
        for row in new_rows:
            await self.db.refresh(row)

        failed = sum(1 for r in new_rows if r.errors)
        logger.info(
            f"Inserted {len(new_rows)} rows into table {table.id}"
            + (f" ({failed} with computed column errors)" if failed else "")
        )
        return new_rows

    async def get(self, table_id: int, row_id: int) -> TableRow:
        """Get a row by ID, verifying it belongs to the table."""
        result = await self.db.execute(
            select(TableRow).where(
                TableRow.id == row_id,
                TableRow.table_id == table_id,
            )
        )
        row = result.scalars().first()
        if not row:
            raise RowNotFoundError(row_id, table_id)
        return row

    async def list(
        self,
        table_id: int,
        offset: int = 0,
        limit: int = 100,
        sort_column: Optional[str] = None,
        sort_direction: str = "asc",
        filters: Optional[Dict[str, Any]] = None,
    ) -> Tuple[List[TableRow], int]:
        """
        List rows with optional filtering, sorting, and pagination.

        Args:
            table_id: Table to query
            offset: Pagination offset
            limit: Pagination limit
            sort_column: Column ID to sort by (sorts via JSON_EXTRACT)
            sort_direction: 'asc' or 'desc'
            filters: Dict of {column_id: {"operator": op, "value": v}} for filtering

        Returns:
            Tuple of (rows, total_count)
        """
        query = select(TableRow).where(TableRow.table_id == table_id)
        count_query = select(func.count(TableRow.id)).where(TableRow.table_id == table_id)

        if filters:
            for col_id, filter_spec in filters.items():
                condition = self._filter_condition(col_id, filter_spec)
                if condition is None:
                    continue
                query = query.where(condition)
                count_query = count_query.where(condition)

        total_result = await self.db.execute(count_query)
        total = total_result.scalar() or 0

        if sort_column:
            sort_expr = func.json_extract(TableRow.data, f"$.{sort_column}")
            if sort_direction == "desc":
                query = query.order_by(sort_expr.desc(), TableRow.id.desc())
            else:
                query = query.order_by(sort_expr.asc(), TableRow.id.asc())
        else:
            query = query.order_by(TableRow.id.asc())

        query = query.offset(offset).limit(limit)

        result = await self.db.execute(query)
        rows = result.scalars().all()

        return list(rows), total

    @staticmethod
    def _filter_condition(col_id: str, filter_spec: Any):
        if not isinstance(filter_spec, dict):
            filter_spec = {"operator": "equals", "value": filter_spec}

        operator = filter_spec.get("operator", "equals")
        value = filter_spec.get("value")
        field = func.json_extract(TableRow.data, f"$.{col_id}")

        if operator == "equals":
            return field == value
        elif operator == "contains":
            return field.like(_contains_pattern(value), escape="\\")
        elif operator == "gt":
            return field > value
        elif operator == "lt":
            return field < value
        elif operator == "gte":
            return field >= value
        elif operator == "lte":
            return field <= value
        elif operator == "is_true":
            return field == True  # noqa: E712
        elif operator == "is_false":
            return field == False  # noqa: E712
        elif operator == "is_empty":
            return (field == None) | (field == "")  # noqa: E711
        elif operator == "is_not_empty":
            return (field != None) & (field != "")  # noqa: E711
        logger.warning(f"Ignoring unknown filter operator '{operator}' on {col_id}")
        return None

    async def update(
        self,
        table: TableDefinition,
        row_id: int,
        values: Dict[str, Any],
        on_error: OnError = OnError.ABORT,
    ) -> TableRow:
        """Merge new values into a row and recompute the computed columns downstream of them."""
        row = await self.get(table.id, row_id)
        columns = as_columns(table.columns)
        prepared = self.prepare_values(columns, values, partial=True)

        current_data = dict(row.data) if row.data else {}
        current_data.update(prepared)

        affected = dependents_of(columns, prepared.keys())
        data, errors = await materialize(
            columns,
            current_data,
            only=affected,
            on_error=on_error,
            errors=dict(row.errors or {}),
        )

        row.data = data
        row.errors = errors
        await self.db.commit()
        await self.db.refresh(row)
        logger.debug(f"Updated row {row_id} in table {table.id}; recomputed {sorted(affected)}")
        return row

    async def delete(self, table_id: int, row_id: int) -> bool:
        """Delete a single row."""
        row = await self.get(table_id, row_id)
        await self.db.delete(row)
        await self.db.commit()
        return True

    async def bulk_delete(self, table_id: int, row_ids: List[int]) -> int:
        """Delete multiple rows. Returns count of deleted rows."""
        result = await self.db.execute(
            delete(TableRow).where(
                TableRow.table_id == table_id,
                TableRow.id.in_(row_ids),
            )
        )
        await self.db.commit()
        return result.rowcount

    async def delete_all(self, table_id: int) -> int:
        """Delete every row in a table."""
        result = await self.db.execute(delete(TableRow).where(TableRow.table_id == table_id))
        await self.db.commit()
        return result.rowcount

    async def search(
        self,
        table_id: int,
        query: str,
        columns: List[Dict[str, Any]],
        limit: int = 50,
    ) -> List[TableRow]:
        """
        Search across text columns for matching rows.

        Args:
            table_id: Table to search
            query: Search query string
            columns: Column definitions from the table schema
            limit: Max results to return
        """
        text_col_ids = [
            col.id for col in as_columns(columns)
            if col.type in (ColumnType.TEXT, ColumnType.SELECT)
        ]

        if not text_col_ids:
            return []

        conditions = [
            func.json_extract(TableRow.data, f"$.{col_id}").like(_contains_pattern(query), escape="\\")
            for col_id in text_col_ids
        ]

        stmt = (
            select(TableRow)
            .where(
                TableRow.table_id == table_id,
                or_(*conditions),
            )
            .order_by(TableRow.id)
            .limit(limit)
        )

        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def where_errors(self, table_id: int, column_id: Optional[str] = None) -> List[TableRow]:
        """Rows with computed column errors, optionally for one column."""
        result = await self.db.execute(
            select(TableRow).where(TableRow.table_id == table_id).order_by(TableRow.id)
        )
        rows = result.scalars().all()
        if column_id:
            return [r for r in rows if column_id in (r.errors or {})]
        return [r for r in rows if r.errors]

    # =========================================================================
    # Display helpers
    # =========================================================================

    @staticmethod
    def to_named(table: TableDefinition, row: TableRow) -> Dict[str, Any]:
        """Row values keyed by column name instead of ID."""
        return {
            col.name: (row.data or {}).get(col.id)
            for col in as_columns(table.columns)
        }

    @staticmethod
    def named_to_ids(table: TableDefinition, values: Dict[str, Any]) -> Dict[str, Any]:
        """Map {column name or ID: value} to {column ID: value}."""
        mapped: Dict[str, Any] = {}
        unknown = []
        for key, value in values.items():
            col = resolve_column(table.columns, key)
            if col is None:
                unknown.append(key)
            else:
                mapped[col.id] = value
        if unknown:
            available = ", ".join(c["name"] for c in table.columns)
            raise InvalidColumnError(f"Unknown columns: {', '.join(unknown)}. Available columns: {available}")
        return mapped


async def get_row_service(db: AsyncSession = Depends(get_async_db)) -> RowService:
    """Dependency injection provider."""
    return RowService(db)
