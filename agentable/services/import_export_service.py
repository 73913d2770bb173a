"""
Import/Export Service - CSV import, CSV and JSON export for table data.
"""

import csv
import io
import json
import logging
from datetime import datetime
from typing import List, Dict, Any, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from agentable.models import TableDefinition, TableRow
from agentable.schemas.table import ColumnType, OnError
from agentable.services.computed_service import DATE_FORMATS, as_columns, generate_column_id
from agentable.services.row_service import RowService

logger = logging.getLogger(__name__)


def detect_schema(
    csv_content: str,
    has_header: bool = True,
    sample_size: int = 100,
) -> Tuple[List[Dict[str, Any]], List[str]]:
    """
    Auto-detect column types from CSV content.

    Returns:
        Tuple of (column_definitions, header_names)
    """
    reader = csv.reader(io.StringIO(csv_content))

    if has_header:
        try:
            headers = next(reader)
        except StopIteration:
            return [], []
    else:
        try:
            first_row = next(reader)
        except StopIteration:
            return [], []
        headers = [f"Column {i + 1}" for i in range(len(first_row))]
        # Re-read from beginning so sample includes first row
        reader = csv.reader(io.StringIO(csv_content))

    headers = [h.strip() for h in headers]

    sample_rows: List[List[str]] = []
    for i, row in enumerate(reader):
        if i >= sample_size:
            break
        sample_rows.append(row)

    columns = []
    used_names = set()
    for col_idx, header in enumerate(headers):
        col_values = [
            row[col_idx].strip() for row in sample_rows
            if col_idx < len(row) and row[col_idx].strip()
        ]

        name = header or f"Column {col_idx + 1}"
        # Column names must be unique (case-insensitive)
        base, n = name, 2
        while name.lower() in used_names:
            name = f"{base} {n}"
            n += 1
        used_names.add(name.lower())

        col_type = _detect_column_type(col_values)
        col_def = {
            "id": generate_column_id(),
            "name": name,
            "type": col_type,
            "required": False,
        }

        if col_type == "select":
            col_def["options"] = sorted(set(col_values))

        columns.append(col_def)

    return columns, headers


def _detect_column_type(values: List[str]) -> str:
    """Detect the most appropriate column type for a set of values."""
    if not values:
        return "text"

    bool_values = {"true", "false", "yes", "no", "1", "0", "y", "n"}
    if all(v.lower() in bool_values for v in values):
        # Pure 0/1 columns are more likely counts than flags
        if not all(v in ("0", "1") for v in values):
            return "boolean"

    numeric_count = 0
    for v in values:
        try:
            float(v.replace(",", ""))
            numeric_count += 1
        except ValueError:
            pass
    if numeric_count == len(values):
        return "number"

    if _check_date_values(values):
        return "date"

    unique_count = len(set(values))
    if unique_count <= 10 and len(values) >= 3 and unique_count < len(values) * 0.5:
        return "select"

    return "text"


def _check_date_values(values: List[str]) -> bool:
    """Check if values appear to be dates."""
    date_count = 0
    for v in values:
        for fmt in DATE_FORMATS:
            try:
                datetime.strptime(v, fmt)
                date_count += 1
                break
            except ValueError:
                continue

    # At least 80% should parse as dates
    return date_count >= len(values) * 0.8


def _coerce_value(raw: str, col_type: str) -> Any:
    """Coerce a raw CSV string value to the target column type."""
    raw = raw.strip()
    if not raw:
        return None

    if col_type == "number":
        try:
            cleaned = raw.replace(",", "")
            if "." in cleaned:
                return float(cleaned)
            return int(cleaned)
        except ValueError:
            return raw

    if col_type == "boolean":
        return raw.lower() in ("true", "yes", "1", "y")

    if col_type == "date":
        for fmt in DATE_FORMATS:
            try:
                return datetime.strptime(raw, fmt).strftime("%Y-%m-%d")
            except ValueError:
                continue
        return raw

    if col_type == "json":
        try:
            return json.loads(raw)
        except ValueError:
            return raw

    # text, select, image: return as-is
    return raw


def parse_csv_rows(
    csv_content: str,
    columns: List[Dict[str, Any]],
    has_header: bool = True,
    header_names: Optional[List[str]] = None,
) -> List[Dict[str, Any]]:
    """
    Parse CSV content into row data dicts using the given column schema.

    Computed columns are never read from the CSV; they are recomputed on insert.

    Args:
        csv_content: Raw CSV string
        columns: Column definitions with id and type
        has_header: Whether CSV has a header row
        header_names: Original header names for mapping (if different from column names)

    Returns:
        List of {column_id: typed_value} dicts
    """
    stored = [c for c in columns if not c.get("computed")]
    reader = csv.reader(io.StringIO(csv_content))

    if has_header:
        try:
            csv_headers = next(reader)
        except StopIteration:
            return []
        csv_headers = [h.strip() for h in csv_headers]

        # Build mapping: csv column index → column definition
        col_map: Dict[int, Dict[str, Any]] = {}
        for csv_idx, csv_header in enumerate(csv_headers):
            for col in stored:
                if col["name"].lower() == csv_header.lower():
                    col_map[csv_idx] = col
                    break
            else:
                if header_names:
                    for orig_idx, orig_name in enumerate(header_names):
                        if orig_name.lower() == csv_header.lower() and orig_idx < len(stored):
                            col_map[csv_idx] = stored[orig_idx]
                            break
    else:
        col_map = {i: col for i, col in enumerate(stored)}

    rows = []
    for row_data in reader:
        data: Dict[str, Any] = {}
        for csv_idx, col in col_map.items():
            if csv_idx < len(row_data):
                value = _coerce_value(row_data[csv_idx], col["type"])
                if value is not None:
                    data[col["id"]] = value
        if data:  # Skip entirely empty rows
            rows.append(data)

    return rows


async def import_csv_to_table(
    db: AsyncSession,
    table: TableDefinition,
    csv_content: str,
    has_header: bool = True,
    on_error: OnError = OnError.IGNORE,
) -> int:
    """
    Import CSV data into an existing table.

    Rows go through RowService so computed columns are materialized.

    Returns:
        Number of rows imported
    """
    rows_data = parse_csv_rows(csv_content, table.columns, has_header)

    if not rows_data:
        return 0

    new_rows = await RowService(db).create_many(table, rows_data, on_error=on_error)
    logger.info(f"Imported {len(new_rows)} CSV rows into table {table.id}")
    return len(new_rows)


def _cell_to_text(value: Any, col_type: ColumnType) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if col_type == ColumnType.JSON or isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def export_csv(
    columns: List[Dict[str, Any]],
    rows: List[TableRow],
) -> str:
    """
    Export rows to CSV string, computed columns included.

    Args:
        columns: Column definitions
        rows: TableRow objects to export

    Returns:
        CSV string with header + data rows
    """
    cols = as_columns(columns)
    output = io.StringIO()
    writer = csv.writer(output)

    writer.writerow([col.name for col in cols])

    for row in rows:
        writer.writerow([
            _cell_to_text((row.data or {}).get(col.id), col.type)
            for col in cols
        ])

    return output.getvalue()


def export_records(
    columns: List[Dict[str, Any]],
    rows: List[TableRow],
) -> List[Dict[str, Any]]:
    """Rows as records keyed by column name, plus _id and _errors."""
    cols = as_columns(columns)
    records = []
    for row in rows:
        record: Dict[str, Any] = {"_id": row.id}
        for col in cols:
            record[col.name] = (row.data or {}).get(col.id)
        errors = row.errors or {}
        record["_errors"] = {
            col.name: errors[col.id] for col in cols if col.id in errors
        }
        records.append(record)
    return records


def export_json(
    columns: List[Dict[str, Any]],
    rows: List[TableRow],
) -> str:
    """Export rows as a JSON array of records."""
    return json.dumps(export_records(columns, rows), default=str, indent=2)
