"""
Tables Router - REST endpoints for tables, columns, rows, import and export.
"""

from fastapi import APIRouter, Depends, Query, UploadFile, File
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional, List
import io
import json
import logging

from agentable.config.settings import settings
from agentable.database import get_async_db
from agentable.exceptions import ExportError, InvalidColumnError, ValidationError
from agentable.models import TableDefinition
from agentable.services.computed_service import resolve_column
from agentable.services.table_service import TableService, get_table_service
from agentable.services.row_service import RowService, get_row_service
from agentable.services.import_export_service import (
    detect_schema, import_csv_to_table, export_csv, export_json,
)
from agentable.services.dataset_export_service import (
    export_image_classification, export_samples_manifest,
)
from agentable.schemas.table import (
    TableCreate, TableUpdate, TableSchema, TableListItem,
    ColumnAdd, ColumnRename, RecomputeRequest, OnError,
    RowCreate, RowUpdate, InsertRowsRequest, TableRowSchema, RowsListResponse,
    BulkDeleteRequest, SearchRequest, ColumnDefinition,
    DatasetExportRequest, DatasetExportResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tables", tags=["tables"])


async def _table_schema(table: TableDefinition, table_service: TableService) -> TableSchema:
    row_count = await table_service.get_row_count(table.id)
    return TableSchema(
        id=table.id,
        name=table.name,
        description=table.description,
        columns=[ColumnDefinition(**c) for c in table.columns],
        row_count=row_count,
        created_at=table.created_at,
        updated_at=table.updated_at,
    )


async def _read_csv(file: UploadFile) -> str:
    content = await file.read()
    try:
        return content.decode("utf-8-sig")  # Handle BOM
    except UnicodeDecodeError:
        raise ValidationError("CSV file must be UTF-8 encoded")


# =============================================================================
# Table CRUD
# =============================================================================

@router.get("", response_model=List[TableListItem])
async def list_tables(
    table_service: TableService = Depends(get_table_service),
):
    """List all tables."""
    return await table_service.list()


@router.post("", response_model=TableSchema, status_code=201)
async def create_table(
    data: TableCreate,
    table_service: TableService = Depends(get_table_service),
):
    """Create a new table."""
    table = await table_service.create(data)
    return await _table_schema(table, table_service)


@router.get("/{table_id}", response_model=TableSchema)
async def get_table(
    table_id: int,
    table_service: TableService = Depends(get_table_service),
):
    """Get a table definition by ID."""
    table = await table_service.get(table_id)
    return await _table_schema(table, table_service)


@router.put("/{table_id}", response_model=TableSchema)
async def update_table(
    table_id: int,
    data: TableUpdate,
    table_service: TableService = Depends(get_table_service),
):
    """Update a table's name or description."""
    table = await table_service.update(table_id, data)
    return await _table_schema(table, table_service)


@router.delete("/{table_id}")
async def delete_table(
    table_id: int,
    table_service: TableService = Depends(get_table_service),
):
    """Delete a table and all its rows."""
    await table_service.delete(table_id)
    return {"ok": True}


# =============================================================================
# Columns
# =============================================================================

@router.post("/{table_id}/columns", response_model=TableSchema, status_code=201)
async def add_column(
    table_id: int,
    data: ColumnAdd,
    table_service: TableService = Depends(get_table_service),
):
    """Add a column. Computed columns are filled in for every existing row."""
    table = await table_service.add_column(table_id, data.column, on_error=data.on_error)
    return await _table_schema(table, table_service)


@router.delete("/{table_id}/columns/{column_ref}", response_model=TableSchema)
async def drop_column(
    table_id: int,
    column_ref: str,
    table_service: TableService = Depends(get_table_service),
):
    """Drop a column by ID or name."""
    table = await table_service.drop_column(table_id, column_ref)
    return await _table_schema(table, table_service)


@router.put("/{table_id}/columns/{column_ref}", response_model=TableSchema)
async def rename_column(
    table_id: int,
    column_ref: str,
    data: ColumnRename,
    table_service: TableService = Depends(get_table_service),
):
    """Rename a column. Its ID stays the same."""
    table = await table_service.rename_column(table_id, column_ref, data.name)
    return await _table_schema(table, table_service)


@router.post("/{table_id}/recompute")
async def recompute_columns(
    table_id: int,
    data: RecomputeRequest,
    table_service: TableService = Depends(get_table_service),
):
    """Recompute computed columns (and their dependents) for every row."""
    return await table_service.recompute(table_id, data.column_ids, on_error=data.on_error)


@router.get("/{table_id}/errors", response_model=List[TableRowSchema])
async def list_error_rows(
    table_id: int,
    column: Optional[str] = None,
    table_service: TableService = Depends(get_table_service),
    row_service: RowService = Depends(get_row_service),
):
    """Rows whose computed columns failed, optionally for one column."""
    table = await table_service.get(table_id)
    column_id = None
    if column:
        col = resolve_column(table.columns, column)
        if col is None:
            raise InvalidColumnError(f"Unknown column: {column}")
        column_id = col.id
    rows = await row_service.where_errors(table_id, column_id)
    return [TableRowSchema.model_validate(r) for r in rows]


# =============================================================================
# Row CRUD
# =============================================================================

@router.get("/{table_id}/rows", response_model=RowsListResponse)
async def list_rows(
    table_id: int,
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    sort_column: Optional[str] = None,
    sort_direction: str = Query("asc", pattern="^(asc|desc)$"),
    filters: Optional[str] = Query(None, description='JSON object of {column_id: value or {"operator": ..., "value": ...}}'),
    table_service: TableService = Depends(get_table_service),
    row_service: RowService = Depends(get_row_service),
):
    """List rows with optional filtering, sorting and pagination."""
    await table_service.get(table_id)

    parsed_filters = None
    if filters:
        try:
            parsed_filters = json.loads(filters)
        except ValueError:
            raise ValidationError("filters must be a JSON object")
        if not isinstance(parsed_filters, dict):
            raise ValidationError("filters must be a JSON object")

    rows, total = await row_service.list(
        table_id=table_id,
        offset=offset,
        limit=limit,
        sort_column=sort_column,
        sort_direction=sort_direction,
        filters=parsed_filters,
    )
    return RowsListResponse(
        rows=[TableRowSchema.model_validate(r) for r in rows],
        total=total,
        offset=offset,
        limit=limit,
    )


@router.post("/{table_id}/rows", response_model=TableRowSchema, status_code=201)
async def create_row(
    table_id: int,
    data: RowCreate,
    table_service: TableService = Depends(get_table_service),
    row_service: RowService = Depends(get_row_service),
):
    """Create a row. Computed columns are filled in before it is stored."""
    table = await table_service.get(table_id)
    row = await row_service.create(table, data.data, on_error=data.on_error)
    return TableRowSchema.model_validate(row)


@router.post("/{table_id}/rows/batch", response_model=List[TableRowSchema], status_code=201)
async def create_rows(
    table_id: int,
    data: InsertRowsRequest,
    table_service: TableService = Depends(get_table_service),
    row_service: RowService = Depends(get_row_service),
):
    """Insert several rows in one transaction."""
    table = await table_service.get(table_id)
    rows = await row_service.create_many(table, data.rows, on_error=data.on_error)
    return [TableRowSchema.model_validate(r) for r in rows]


@router.get("/{table_id}/rows/{row_id}", response_model=TableRowSchema)
async def get_row(
    table_id: int,
    row_id: int,
    table_service: TableService = Depends(get_table_service),
    row_service: RowService = Depends(get_row_service),
):
    """Get a single row by ID."""
    await table_service.get(table_id)
    row = await row_service.get(table_id, row_id)
    return TableRowSchema.model_validate(row)


@router.put("/{table_id}/rows/{row_id}", response_model=TableRowSchema)
async def update_row(
    table_id: int,
    row_id: int,
    data: RowUpdate,
    table_service: TableService = Depends(get_table_service),
    row_service: RowService = Depends(get_row_service),
):
    """Update a row's values and recompute what depends on them."""
    table = await table_service.get(table_id)
    row = await row_service.update(table, row_id, data.data, on_error=data.on_error)
    return TableRowSchema.model_validate(row)


@router.delete("/{table_id}/rows/{row_id}")
async def delete_row(
    table_id: int,
    row_id: int,
    table_service: TableService = Depends(get_table_service),
    row_service: RowService = Depends(get_row_service),
):
    """Delete a single row."""
    await table_service.get(table_id)
    await row_service.delete(table_id, row_id)
    return {"ok": True}


@router.post("/{table_id}/rows/bulk-delete")
async def bulk_delete_rows(
    table_id: int,
    data: BulkDeleteRequest,
    table_service: TableService = Depends(get_table_service),
    row_service: RowService = Depends(get_row_service),
):
    """Delete multiple rows at once."""
    await table_service.get(table_id)
    deleted = await row_service.bulk_delete(table_id, data.row_ids)
    return {"ok": True, "deleted": deleted}


@router.post("/{table_id}/rows/search", response_model=List[TableRowSchema])
async def search_rows(
    table_id: int,
    data: SearchRequest,
    table_service: TableService = Depends(get_table_service),
    row_service: RowService = Depends(get_row_service),
):
    """Text search across text and select columns in a table."""
    table = await table_service.get(table_id)
    rows = await row_service.search(
        table_id=table_id,
        query=data.query,
        columns=table.columns,
        limit=data.limit,
    )
    return [TableRowSchema.model_validate(r) for r in rows]


# =============================================================================
# Import / Export
# =============================================================================

@router.post("/{table_id}/import")
async def import_csv(
    table_id: int,
    file: UploadFile = File(...),
    has_header: bool = Query(True),
    on_error: OnError = Query(OnError.IGNORE),
    table_service: TableService = Depends(get_table_service),
    db: AsyncSession = Depends(get_async_db),
):
    """Import CSV data into an existing table."""
    table = await table_service.get(table_id)
    csv_text = await _read_csv(file)
    count = await import_csv_to_table(db, table, csv_text, has_header=has_header, on_error=on_error)
    return {"ok": True, "imported": count}


@router.post("/import-with-schema", response_model=TableSchema, status_code=201)
async def import_with_schema(
    file: UploadFile = File(...),
    table_name: str = Query(..., min_length=1, max_length=255),
    table_description: Optional[str] = Query(None),
    has_header: bool = Query(True),
    table_service: TableService = Depends(get_table_service),
    db: AsyncSession = Depends(get_async_db),
):
    """Create a new table from a CSV file with an auto-detected schema."""
    csv_text = await _read_csv(file)

    columns, _ = detect_schema(csv_text, has_header=has_header)
    if not columns:
        raise ValidationError("Could not detect columns from CSV")

    table = await table_service.create(TableCreate(
        name=table_name,
        description=table_description,
        columns=[ColumnDefinition(**c) for c in columns],
    ))
    await import_csv_to_table(db, table, csv_text, has_header=has_header)
    return await _table_schema(table, table_service)


@router.get("/{table_id}/export")
async def export_table(
    table_id: int,
    format: str = Query("csv", pattern="^(csv|json)$"),
    table_service: TableService = Depends(get_table_service),
    row_service: RowService = Depends(get_row_service),
):
    """Export a table's data, computed columns included, as CSV or JSON."""
    table = await table_service.get(table_id)
    rows, _ = await row_service.list(table_id=table_id, limit=settings.MAX_ROWS_PER_TABLE)

    safe_name = table.name.replace('"', '').replace("'", "")[:100]
    if format == "json":
        content, media_type = export_json(table.columns, rows), "application/json"
    else:
        content, media_type = export_csv(table.columns, rows), "text/csv"

    return StreamingResponse(
        io.StringIO(content),
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{safe_name}.{format}"'},
    )


@router.post("/{table_id}/export/dataset", response_model=DatasetExportResponse)
async def export_dataset(
    table_id: int,
    data: DatasetExportRequest,
    table_service: TableService = Depends(get_table_service),
    row_service: RowService = Depends(get_row_service),
):
    """Write the table out in a dataset-visualization import layout under the export root."""
    table = await table_service.get(table_id)
    rows, _ = await row_service.list(table_id=table_id, limit=settings.MAX_ROWS_PER_TABLE)

    if data.format == "image_classification":
        if not data.label_column:
            raise ExportError("label_column is required for image_classification exports")
        result = export_image_classification(
            table, rows,
            media_column=data.media_column,
            label_column=data.label_column,
            dest=data.dest,
            copy_media=data.copy_media,
        )
    else:
        result = export_samples_manifest(
            table, rows,
            media_column=data.media_column,
            dest=data.dest,
            field_columns=data.field_columns,
        )

    logger.info(f"Exported table {table_id} as {data.format} to {result['path']}")
    return DatasetExportResponse(**result)
