"""
Table Definition Service - CRUD operations for table schemas, including
computed column add/drop and recomputation.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, delete, or_
from typing import Optional, List, Dict, Any
from fastapi import Depends
import logging

from agentable.database import get_async_db
from agentable.exceptions import (
    ColumnDependencyError,
    ConflictError,
    DuplicateTableError,
    InvalidColumnError,
    TableNotFoundError,
)
from agentable.models import AgentDefinition, TableDefinition, TableRow
from agentable.schemas.table import ColumnDefinition, OnError, TableCreate, TableUpdate
from agentable.services.computed_service import (
    as_columns,
    coerce_value,
    dependents_of,
    direct_dependents,
    dump_columns,
    materialize_many,
    resolve_column,
    validate_columns,
)

logger = logging.getLogger(__name__)


class TableService:
    """Service for table definition CRUD operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, data: TableCreate) -> TableDefinition:
        """Create a new table definition."""
        columns = validate_columns(data.columns)
        await self._ensure_name_free(data.name)

        table = TableDefinition(
            name=data.name,
            description=data.description,
            columns=dump_columns(columns),
        )
        self.db.add(table)
        await self.db.commit()
        await self.db.refresh(table)
        logger.info(f"Created table '{table.name}' (id={table.id}) with {len(columns)} columns")
        return table

    async def get(self, table_id: int) -> TableDefinition:
        """Get a table definition by ID."""
        result = await self.db.execute(
            select(TableDefinition).where(TableDefinition.id == table_id)
        )
        table = result.scalars().first()
        if not table:
            raise TableNotFoundError(table_id)
        return table

    async def get_by_name(self, name: str) -> TableDefinition:
        """Get a table definition by its unique name."""
        result = await self.db.execute(
            select(TableDefinition).where(TableDefinition.name == name)
        )
        table = result.scalars().first()
        if not table:
            raise TableNotFoundError(f"'{name}'")
        return table

    async def find(self, name: str) -> Optional[TableDefinition]:
        """Get a table by name, or None."""
        result = await self.db.execute(
            select(TableDefinition).where(TableDefinition.name == name)
        )
        return result.scalars().first()

    async def list(self) -> List[dict]:
        """List all tables with row counts."""
        result = await self.db.execute(
            select(TableDefinition).order_by(TableDefinition.updated_at.desc(), TableDefinition.id.desc())
        )
        tables = result.scalars().all()

        count_result = await self.db.execute(
            select(TableRow.table_id, func.count(TableRow.id).label("row_count"))
            .where(TableRow.table_id.in_([t.id for t in tables]))
            .group_by(TableRow.table_id)
        )
        row_counts = {row.table_id: row.row_count for row in count_result}

        return [
            {
                "id": t.id,
                "name": t.name,
                "description": t.description,
                "column_count": len(t.columns) if t.columns else 0,
                "computed_column_count": sum(1 for c in (t.columns or []) if c.get("computed")),
                "row_count": row_counts.get(t.id, 0),
                "created_at": t.created_at,
                "updated_at": t.updated_at,
            }
            for t in tables
        ]

    async def update(self, table_id: int, data: TableUpdate) -> TableDefinition:
        """Update a table's name or description."""
        table = await self.get(table_id)

        if data.name is not None and data.name != table.name:
            await self._ensure_name_free(data.name)
            table.name = data.name
        if data.description is not None:
            table.description = data.description

        await self.db.commit()
        await self.db.refresh(table)
        return table

    async def delete(self, table_id: int) -> bool:
        """Delete a table and all its rows."""
        table = await self.get(table_id)
        owner = await self.db.execute(
            select(AgentDefinition.name).where(or_(
                AgentDefinition.memory_table_id == table_id,
                AgentDefinition.tool_log_table_id == table_id,
            ))
        )
        agent_name = owner.scalar()
        if agent_name:
            raise ConflictError(f"Table '{table.name}' belongs to agent '{agent_name}'; delete the agent instead")
        await self.db.execute(delete(TableRow).where(TableRow.table_id == table_id))
        await self.db.delete(table)
        await self.db.commit()
        logger.info(f"Deleted table '{table.name}' (id={table_id})")
        return True

    async def get_row_count(self, table_id: int) -> int:
        """Get the number of rows in a table."""
        result = await self.db.execute(
            select(func.count(TableRow.id)).where(TableRow.table_id == table_id)
        )
        return result.scalar() or 0

    # =========================================================================
    # Column operations
    # =========================================================================

    async def add_column(
        self,
        table_id: int,
        column: ColumnDefinition,
        on_error: OnError = OnError.ABORT,
    ) -> TableDefinition:
        """
        Add a column. Computed columns are backfilled for all existing rows;
        stored columns get their default.
        """
        table = await self.get(table_id)
        columns = validate_columns(as_columns(table.columns) + [column])

        rows = await self._all_rows(table_id)
        try:
            if column.is_computed:
                results = await materialize_many(
                    columns,
                    [(dict(r.data or {}), dict(r.errors or {})) for r in rows],
                    only={column.id},
                    on_error=on_error,
                )
                for row, (data, errors) in zip(rows, results):
                    row.data = data
                    row.errors = errors
            elif column.default is not None:
                default = coerce_value(column.default, column)
                for row in rows:
                    data = dict(row.data or {})
                    data.setdefault(column.id, default)
                    row.data = data
        except Exception:
            await self.db.rollback()
            raise

        table.columns = dump_columns(columns)
        await self.db.commit()
        await self.db.refresh(table)
        logger.info(
            f"Added {'computed ' if column.is_computed else ''}column {column.id} "
            f"to table {table_id} ({len(rows)} rows)"
        )
        return table

    async def drop_column(self, table_id: int, column_ref: str) -> TableDefinition:
        """Drop a column. Refuses while computed columns depend on it."""
        table = await self.get(table_id)
        column = resolve_column(table.columns, column_ref)
        if column is None:
            raise InvalidColumnError(f"Unknown column: {column_ref}")

        dependents = direct_dependents(table.columns, column.id)
        if dependents:
            raise ColumnDependencyError(column.id, dependents)

        remaining = [c for c in as_columns(table.columns) if c.id != column.id]
        if not remaining:
            raise InvalidColumnError("Cannot drop the last column of a table")

        for row in await self._all_rows(table_id):
            if column.id in (row.data or {}) or column.id in (row.errors or {}):
                data = dict(row.data or {})
                data.pop(column.id, None)
                errors = dict(row.errors or {})
                errors.pop(column.id, None)
                row.data = data
                row.errors = errors

        table.columns = dump_columns(remaining)
        await self.db.commit()
        await self.db.refresh(table)
        logger.info(f"Dropped column {column.id} from table {table_id}")
        return table

    async def rename_column(self, table_id: int, column_ref: str, new_name: str) -> TableDefinition:
        """Change a column's display name. Its ID, and so its dependents, are unaffected."""
        table = await self.get(table_id)
        column = resolve_column(table.columns, column_ref)
        if column is None:
            raise InvalidColumnError(f"Unknown column: {column_ref}")

        columns = [
            c.model_copy(update={"name": new_name}) if c.id == column.id else c
            for c in as_columns(table.columns)
        ]
        columns = validate_columns(columns)
        table.columns = dump_columns(columns)
        await self.db.commit()
        await self.db.refresh(table)
        return table

    async def recompute(
        self,
        table_id: int,
        column_ids: Optional[List[str]] = None,
        on_error: OnError = OnError.IGNORE,
    ) -> Dict[str, Any]:
        """
        Re-materialize computed columns (and everything downstream of them) for every row.

        Returns a summary {"rows": n, "columns": [...], "errors": rows_with_errors}.
        """
        table = await self.get(table_id)
        columns = as_columns(table.columns)

        if column_ids:
            targets = set()
            for ref in column_ids:
                col = resolve_column(columns, ref)
                if col is None:
                    raise InvalidColumnError(f"Unknown column: {ref}")
                if not col.is_computed:
                    raise InvalidColumnError(f"Column {col.id} is not computed")
                targets.add(col.id)
            targets |= dependents_of(columns, targets)
        else:
            targets = {c.id for c in columns if c.is_computed}

        rows = await self._all_rows(table_id)
        if not targets or not rows:
            return {"rows": len(rows), "columns": sorted(targets), "errors": 0}

        try:
            results = await materialize_many(
                columns,
                [(dict(r.data or {}), dict(r.errors or {})) for r in rows],
                only=targets,
                on_error=on_error,
            )
        except Exception:
            await self.db.rollback()
            raise

        with_errors = 0
        for row, (data, errors) in zip(rows, results):
            row.data = data
            row.errors = errors
            if errors:
                with_errors += 1
        await self.db.commit()

        logger.info(f"Recomputed {len(targets)} columns over {len(rows)} rows in table {table_id}")
        return {"rows": len(rows), "columns": sorted(targets), "errors": with_errors}

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _ensure_name_free(self, name: str) -> None:
        if await self.find(name) is not None:
            raise DuplicateTableError(name)

    async def _all_rows(self, table_id: int) -> List[TableRow]:
        result = await self.db.execute(
            select(TableRow).where(TableRow.table_id == table_id).order_by(TableRow.id)
        )
        return list(result.scalars().all())


async def get_table_service(db: AsyncSession = Depends(get_async_db)) -> TableService:
    """Dependency injection provider."""
    return TableService(db)
