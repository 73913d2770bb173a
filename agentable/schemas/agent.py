"""
Agent schemas: definitions, chat requests/responses, execution traces and stream events.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from agentable.config.settings import settings


# =============================================================================
# Trace Types
# =============================================================================

class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class ToolDefinition(BaseModel):
    name: str
    description: str
    input_schema: Dict[str, Any]


class ToolCall(BaseModel):
    """One tool execution inside the agent loop."""
    tool_use_id: str
    tool_name: str
    tool_input: Dict[str, Any]
    output: str
    data: Any = None
    is_error: bool = False
    execution_ms: int = 0

    def to_result_block(self) -> Dict[str, Any]:
        """The tool_result content block sent back to the model."""
        block: Dict[str, Any] = {"type": "tool_result", "tool_use_id": self.tool_use_id, "content": self.output}
        if self.is_error:
            block["is_error"] = True
        return block

    def to_record(self) -> "ToolCallRecord":
        return ToolCallRecord(
            tool_name=self.tool_name,
            input=self.tool_input,
            output=self.output,
            data=self.data,
            is_error=self.is_error,
        )


class AgentIteration(BaseModel):
    iteration: int
    messages_to_model: List[Dict[str, Any]]
    response_content: List[Dict[str, Any]]
    stop_reason: str
    usage: TokenUsage
    api_call_ms: int
    tool_calls: List[ToolCall] = Field(default_factory=list)


class AgentTrace(BaseModel):
    """Complete execution trace for one agent loop run."""
    trace_id: str
    model: str
    max_tokens: int
    max_iterations: int
    temperature: float
    system_prompt: str
    tools: List[ToolDefinition]
    context: Dict[str, Any]
    initial_messages: List[Dict[str, Any]]
    iterations: List[AgentIteration]
    final_text: str
    total_iterations: int
    outcome: Literal["complete", "max_iterations", "cancelled", "error"]
    error_message: Optional[str] = None
    total_input_tokens: int
    total_output_tokens: int
    total_duration_ms: int
    peak_input_tokens: Optional[int] = None


# =============================================================================
# Agent Definitions
# =============================================================================

class AgentCreate(BaseModel):
    """Request schema for creating an agent."""
    name: str = Field(min_length=1, max_length=100, pattern=r"^[A-Za-z][A-Za-z0-9_]*$")
    system_prompt: str = Field(default="You are a helpful assistant.", min_length=1)
    model: str = Field(default_factory=lambda: settings.DEFAULT_MODEL)
    max_tokens: int = Field(default_factory=lambda: settings.DEFAULT_MAX_TOKENS, ge=1)
    temperature: float = Field(default_factory=lambda: settings.DEFAULT_TEMPERATURE, ge=0.0, le=1.0)
    n_latest_messages: int = Field(default_factory=lambda: settings.AGENT_HISTORY_MESSAGES, ge=0)
    max_iterations: int = Field(default_factory=lambda: settings.AGENT_MAX_ITERATIONS, ge=1, le=50)
    tool_names: List[str] = Field(default_factory=list)


class AgentSchema(BaseModel):
    """Response schema for an agent definition."""
    id: int
    name: str
    system_prompt: str
    model: str
    max_tokens: int
    temperature: float
    n_latest_messages: int
    max_iterations: int
    tool_names: List[str]
    memory_table_id: int
    tool_log_table_id: int
    created_at: datetime

    model_config = {"from_attributes": True}


class ChatRequest(BaseModel):
    """Request schema for one conversation turn."""
    message: str = Field(min_length=1)
    context: Dict[str, Any] = Field(default_factory=dict)


class ToolCallRecord(BaseModel):
    """A tool call as returned from chat. `data` is the tool's structured result, if it has one."""
    tool_name: str
    input: Dict[str, Any]
    output: str
    data: Any = None
    is_error: bool = False


class ChatResponse(BaseModel):
    """Result of one conversation turn."""
    agent: str
    text: str
    tool_calls: List[ToolCallRecord] = Field(default_factory=list)
    trace_id: Optional[str] = None
    outcome: str = "complete"
    usage: TokenUsage = Field(default_factory=TokenUsage)


class MemoryMessage(BaseModel):
    """A message stored in an agent's memory table."""
    row_id: int
    role: Literal["user", "assistant"]
    content: str
    timestamp: Optional[str] = None


# =============================================================================
# Stream Events (SSE)
# =============================================================================

class TextDeltaEvent(BaseModel):
    type: Literal["text_delta"] = "text_delta"
    text: str


class StatusEvent(BaseModel):
    type: Literal["status"] = "status"
    message: str


class ToolStartEvent(BaseModel):
    type: Literal["tool_start"] = "tool_start"
    tool: str
    input: Dict[str, Any]
    tool_use_id: str


class ToolProgressEvent(BaseModel):
    type: Literal["tool_progress"] = "tool_progress"
    tool: str
    stage: str
    message: str
    progress: float


class ToolCompleteEvent(BaseModel):
    type: Literal["tool_complete"] = "tool_complete"
    tool: str
    output: str


class CompleteEvent(BaseModel):
    type: Literal["complete"] = "complete"
    payload: ChatResponse


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str


class CancelledEvent(BaseModel):
    type: Literal["cancelled"] = "cancelled"


StreamEvent = Union[
    TextDeltaEvent,
    StatusEvent,
    ToolStartEvent,
    ToolProgressEvent,
    ToolCompleteEvent,
    CompleteEvent,
    ErrorEvent,
    CancelledEvent,
]
