"""
Dataset Export Service - write tables in the import formats of a dataset
visualization tool.

Two layouts are supported:

samples manifest
    <dest>/samples.json
    {"name": ..., "samples": [{"filepath": ..., "tags": [...], <field>: ...}]}

image classification directory
    <dest>/data/<uuid><ext>      (only when copy_media is set)
    <dest>/labels.json
    {"classes": [...], "labels": {<uuid>: <class index> | null}}

Without copy_media the labels file gets a "filepaths" mapping instead, so the
dataset can be loaded in place.
"""

import json
import logging
import shutil
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from agentable.config.settings import settings
from agentable.exceptions import ExportError
from agentable.models import TableDefinition, TableRow
from agentable.schemas.table import ColumnDefinition, ColumnType
from agentable.services.computed_service import as_columns, resolve_column

logger = logging.getLogger(__name__)

# Keys every sample carries; field columns may not reuse them
SAMPLE_KEYS = frozenset({"filepath", "tags", "row_id"})


def resolve_export_dir(dest: str, root: Optional[Path] = None) -> Path:
    """Resolve dest beneath the export root. Paths escaping the root are rejected."""
    root = (root or settings.export_root).resolve()
    target = (root / dest).resolve()
    if target != root and root not in target.parents:
        raise ExportError(f"Export destination {dest!r} is outside the export directory")
    return target


def _require_column(table: TableDefinition, ref: str, role: str) -> ColumnDefinition:
    col = resolve_column(table.columns, ref)
    if col is None:
        raise ExportError(f"Unknown {role} column: {ref}")
    return col


def _json_field(value: Any) -> Any:
    """Dataset fields must be JSON primitives, lists or dicts."""
    if value is None or isinstance(value, (str, int, float, bool, list, dict)):
        return value
    return str(value)


def _row_tags(row: TableRow) -> List[str]:
    return ["has_errors"] if row.errors else []


def export_samples_manifest(
    table: TableDefinition,
    rows: List[TableRow],
    media_column: str,
    dest: str,
    field_columns: Optional[List[str]] = None,
    root: Optional[Path] = None,
) -> Dict[str, Any]:
    """
    Write samples.json: one sample per row with a media filepath.

    field_columns defaults to every other column. Rows without media are skipped.
    """
    media = _require_column(table, media_column, "media")
    if field_columns is None:
        fields = [c for c in as_columns(table.columns) if c.id != media.id]
    else:
        fields = [_require_column(table, ref, "field") for ref in field_columns]

    clashing = [c.name for c in fields if c.name in SAMPLE_KEYS]
    if clashing:
        raise ExportError(
            f"Field columns {', '.join(clashing)} clash with reserved sample keys "
            f"({', '.join(sorted(SAMPLE_KEYS))}); leave them out of field_columns"
        )

    out_dir = resolve_export_dir(dest, root)
    out_dir.mkdir(parents=True, exist_ok=True)

    samples = []
    skipped = 0
    for row in rows:
        filepath = (row.data or {}).get(media.id)
        if not filepath:
            skipped += 1
            continue
        sample: Dict[str, Any] = {
            "filepath": str(filepath),
            "tags": _row_tags(row),
            "row_id": row.id,
        }
        for col in fields:
            sample[col.name] = _json_field((row.data or {}).get(col.id))
        samples.append(sample)

    manifest = {"name": table.name, "samples": samples}
    path = out_dir / "samples.json"
    path.write_text(json.dumps(manifest, indent=2, default=str), encoding="utf-8")

    logger.info(f"Exported {len(samples)} samples from table '{table.name}' to {path} ({skipped} skipped)")
    return {"path": str(path), "format": "samples", "exported": len(samples), "skipped": skipped}


def export_image_classification(
    table: TableDefinition,
    rows: List[TableRow],
    media_column: str,
    label_column: str,
    dest: str,
    copy_media: bool = False,
    root: Optional[Path] = None,
) -> Dict[str, Any]:
    """
    Write an image classification dataset directory (data/ + labels.json).

    Classes come from the label column's options when it is a select column,
    otherwise from the distinct labels seen, in sorted order.
    """
    media = _require_column(table, media_column, "media")
    label = _require_column(table, label_column, "label")
    if media.type not in (ColumnType.IMAGE, ColumnType.TEXT):
        raise ExportError(f"Media column {media.name} must be an image or text column")

    out_dir = resolve_export_dir(dest, root)

    exportable = [r for r in rows if (r.data or {}).get(media.id)]
    skipped = len(rows) - len(exportable)

    if label.type == ColumnType.SELECT and label.options:
        classes = list(label.options)
    else:
        classes = sorted({
            str((r.data or {}).get(label.id))
            for r in exportable
            if (r.data or {}).get(label.id) is not None
        })
    class_index = {c: i for i, c in enumerate(classes)}

    if copy_media:
        missing = [
            str(r.data[media.id]) for r in exportable
            if not Path(str(r.data[media.id])).is_file()
        ]
        if missing:
            raise ExportError(f"Media files not found: {', '.join(missing[:5])}")

    data_dir = out_dir / "data"
    if copy_media:
        data_dir.mkdir(parents=True, exist_ok=True)
    else:
        out_dir.mkdir(parents=True, exist_ok=True)

    labels: Dict[str, Optional[int]] = {}
    filepaths: Dict[str, str] = {}
    for row in exportable:
        source = Path(str(row.data[media.id]))
        sample_id = uuid.uuid4().hex
        if copy_media:
            shutil.copy2(source, data_dir / f"{sample_id}{source.suffix}")
        else:
            filepaths[sample_id] = str(source)

        value = row.data.get(label.id)
        labels[sample_id] = class_index.get(str(value)) if value is not None else None

    payload: Dict[str, Any] = {"classes": classes, "labels": labels}
    if not copy_media:
        payload["filepaths"] = filepaths

    path = out_dir / "labels.json"
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    logger.info(
        f"Exported {len(labels)} labeled samples ({len(classes)} classes) "
        f"from table '{table.name}' to {out_dir}"
    )
    return {
        "path": str(out_dir),
        "format": "image_classification",
        "exported": len(labels),
        "skipped": skipped,
    }
