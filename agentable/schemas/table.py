"""
Table, column and row Pydantic schemas for request/response validation.
"""

from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


class ColumnType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    SELECT = "select"
    JSON = "json"
    IMAGE = "image"  # Local file path or URL to an image


class OnError(str, Enum):
    """What to do when a computed column fails for a row."""
    ABORT = "abort"    # Raise and roll back the write
    IGNORE = "ignore"  # Store null and record the error on the row


class ComputedSpec(BaseModel):
    """How a computed column derives its value."""
    function: str = Field(description="Registered function name, e.g. 'anthropic.text'")
    inputs: Dict[str, str] = Field(
        default_factory=dict,
        description="Function parameter -> source column ID",
    )
    params: Dict[str, Any] = Field(
        default_factory=dict,
        description="Literal keyword arguments passed to the function",
    )


class ColumnDefinition(BaseModel):
    """Schema for a single column in a table definition."""
    id: str = Field(description="Stable column ID (col_xxx)")
    name: str = Field(min_length=1, max_length=255, description="Column display name")
    type: ColumnType = Field(description="Column data type")
    required: bool = Field(default=False, description="Whether this column is required")
    default: Optional[Any] = Field(default=None, description="Default value for new rows")
    options: Optional[List[str]] = Field(default=None, description="Options for select type columns")
    computed: Optional[ComputedSpec] = Field(default=None, description="Set for computed columns")

    @model_validator(mode="after")
    def _check_computed(self):
        if self.computed is not None:
            if self.required:
                raise ValueError(f"Computed column {self.id} cannot be required")
            if self.default is not None:
                raise ValueError(f"Computed column {self.id} cannot have a default")
        return self

    @property
    def is_computed(self) -> bool:
        return self.computed is not None


class TableCreate(BaseModel):
    """Request schema for creating a table."""
    name: str = Field(min_length=1, max_length=255, description="Table name")
    description: Optional[str] = Field(default=None, description="Table description")
    columns: List[ColumnDefinition] = Field(description="Column definitions")


class TableUpdate(BaseModel):
    """Request schema for updating a table's name or description."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None


class ColumnAdd(BaseModel):
    """Request schema for adding a column to an existing table."""
    column: ColumnDefinition
    on_error: OnError = OnError.ABORT


class ColumnRename(BaseModel):
    """Request schema for renaming a column (the ID never changes)."""
    name: str = Field(min_length=1, max_length=255)


class RecomputeRequest(BaseModel):
    """Request schema for re-materializing computed columns."""
    column_ids: Optional[List[str]] = Field(default=None, description="Columns to recompute; all computed columns if omitted")
    on_error: OnError = OnError.IGNORE


class TableSchema(BaseModel):
    """Response schema for a table definition."""
    id: int
    name: str
    description: Optional[str] = None
    columns: List[ColumnDefinition]
    row_count: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class TableListItem(BaseModel):
    """Lightweight table item for list responses."""
    id: int
    name: str
    description: Optional[str] = None
    column_count: int
    computed_column_count: int
    row_count: int
    created_at: datetime
    updated_at: datetime


class RowCreate(BaseModel):
    """Request schema for creating a row."""
    data: Dict[str, Any] = Field(description="Column values keyed by column ID")
    on_error: OnError = OnError.ABORT


class InsertRowsRequest(BaseModel):
    """Request schema for inserting several rows at once."""
    rows: List[Dict[str, Any]] = Field(min_length=1, description="Column values keyed by column ID, one dict per row")
    on_error: OnError = OnError.ABORT


class RowUpdate(BaseModel):
    """Request schema for updating a row."""
    data: Dict[str, Any] = Field(description="Column values to update, keyed by column ID")
    on_error: OnError = OnError.ABORT


class TableRowSchema(BaseModel):
    """Response schema for a table row."""
    id: int
    table_id: int
    data: Dict[str, Any]
    errors: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class RowsListResponse(BaseModel):
    """Response schema for paginated row listing."""
    rows: List[TableRowSchema]
    total: int
    offset: int
    limit: int


class BulkDeleteRequest(BaseModel):
    """Request schema for bulk row deletion."""
    row_ids: List[int] = Field(min_length=1, description="IDs of rows to delete")


class SearchRequest(BaseModel):
    """Request schema for full-text search across rows."""
    query: str = Field(min_length=1, description="Search query")
    limit: int = Field(default=50, ge=1, le=500)


class DatasetExportRequest(BaseModel):
    """Request schema for exporting a table to a dataset-visualization import format."""
    format: str = Field(default="samples", pattern="^(samples|image_classification)$")
    media_column: str = Field(description="Column ID or name holding media file paths")
    label_column: Optional[str] = Field(default=None, description="Column ID or name with class labels (image_classification)")
    field_columns: Optional[List[str]] = Field(default=None, description="Extra columns to include as sample fields (samples)")
    dest: str = Field(min_length=1, description="Destination directory, relative to the export root")
    copy_media: bool = False


class DatasetExportResponse(BaseModel):
    """Summary of a dataset export."""
    path: str
    format: str
    exported: int
    skipped: int
