"""
Schemas package for the agentable API.
"""

from .table import (
    ColumnType,
    OnError,
    ComputedSpec,
    ColumnDefinition,
    TableCreate,
    TableUpdate,
    ColumnAdd,
    ColumnRename,
    RecomputeRequest,
    TableSchema,
    TableListItem,
    RowCreate,
    InsertRowsRequest,
    RowUpdate,
    TableRowSchema,
    RowsListResponse,
    BulkDeleteRequest,
    SearchRequest,
    DatasetExportRequest,
    DatasetExportResponse,
)

from .agent import (
    TokenUsage,
    ToolDefinition,
    ToolCall,
    AgentIteration,
    AgentTrace,
    AgentCreate,
    AgentSchema,
    ChatRequest,
    ChatResponse,
    ToolCallRecord,
    MemoryMessage,
    StreamEvent,
)
