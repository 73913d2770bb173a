"""
Agent Service

An agent is a named system prompt plus a tool set, with its conversation
memory and tool call log kept in two managed tables (<name>_memory and
<name>_tools). Each chat turn reads recent memory, runs the agent loop and
writes the turn back.
"""

import logging
from datetime import datetime
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agentable.agents.agent_loop import (
    AgentCancelled,
    AgentComplete,
    AgentError,
    AgentFinished,
    AgentTextDelta,
    AgentThinking,
    AgentToolComplete,
    AgentToolProgress,
    AgentToolStart,
    CancellationToken,
    run_agent_loop,
)
from agentable.agents.llm_client import get_llm_client
from agentable.config.llm_models import clamp_max_tokens, is_known_model
from agentable.config.logging_config import agent_log_context, bind_agent
from agentable.database import get_async_db
from agentable.exceptions import (
    AgentNotFoundError,
    AgentRunError,
    DuplicateAgentError,
    DuplicateTableError,
    ValidationError,
)
from agentable.models import AgentDefinition, TableDefinition, TableRow
from agentable.schemas.agent import (
    AgentCreate,
    AgentTrace,
    CancelledEvent,
    ChatResponse,
    CompleteEvent,
    ErrorEvent,
    MemoryMessage,
    StatusEvent,
    TextDeltaEvent,
    TokenUsage,
    ToolCompleteEvent,
    ToolProgressEvent,
    ToolStartEvent,
)
from agentable.schemas.table import ColumnDefinition, ColumnType, OnError, TableCreate
from agentable.services.row_service import RowService
from agentable.services.table_service import TableService
from agentable.tools.registry import resolve_agent_tools, unknown_tool_names

logger = logging.getLogger(__name__)

MEMORY_SUFFIX = "_memory"
TOOLS_SUFFIX = "_tools"

MEMORY_COLUMNS = [
    ColumnDefinition(id="role", name="role", type=ColumnType.SELECT, required=True,
                     options=["user", "assistant"]),
    ColumnDefinition(id="content", name="content", type=ColumnType.TEXT),
    ColumnDefinition(id="timestamp", name="timestamp", type=ColumnType.TEXT),
]

TOOL_LOG_COLUMNS = [
    ColumnDefinition(id="tool_name", name="tool_name", type=ColumnType.TEXT, required=True),
    ColumnDefinition(id="tool_input", name="tool_input", type=ColumnType.JSON),
    ColumnDefinition(id="output", name="output", type=ColumnType.TEXT),
    ColumnDefinition(id="timestamp", name="timestamp", type=ColumnType.TEXT),
]


def _now() -> str:
    return datetime.utcnow().isoformat(timespec="seconds")


def build_history(rows: List[TableRow]) -> List[Dict[str, Any]]:
    """
    Turn memory rows (oldest first) into Messages API history.

    Leading assistant turns are dropped and consecutive turns from the same
    role are merged, since the API wants alternating turns starting with user.
    """
    messages: List[Dict[str, Any]] = []
    for row in rows:
        data = row.data or {}
        role = data.get("role")
        content = data.get("content") or ""
        if role not in ("user", "assistant") or not content:
            continue
        if not messages and role != "user":
            continue
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += "\n\n" + content
        else:
            messages.append({"role": role, "content": content})
    return messages


class AgentService:
    """Service for agent definitions and conversation turns."""

    def __init__(self, db: AsyncSession, client: Optional[Any] = None):
        self.db = db
        self._client = client
        self.tables = TableService(db)
        self.rows = RowService(db)

    @property
    def client(self):
        return self._client or get_llm_client()

    # =========================================================================
    # Agent CRUD
    # =========================================================================

    async def create_agent(self, data: AgentCreate) -> AgentDefinition:
        """Create an agent along with its memory and tool log tables."""
        if await self._find(data.name) is not None:
            raise DuplicateAgentError(data.name)

        unknown = unknown_tool_names(data.tool_names)
        if unknown:
            raise ValidationError(f"Unknown tools: {', '.join(unknown)}")
        if not is_known_model(data.model):
            raise ValidationError(f"Unknown model: {data.model}")

        managed = [
            (f"{data.name}{MEMORY_SUFFIX}", f"Conversation memory for agent {data.name}", MEMORY_COLUMNS),
            (f"{data.name}{TOOLS_SUFFIX}", f"Tool call log for agent {data.name}", TOOL_LOG_COLUMNS),
        ]
        for table_name, _, _ in managed:
            if await self.tables.find(table_name) is not None:
                raise DuplicateTableError(table_name)

        created_ids: List[int] = []
        try:
            for table_name, description, columns in managed:
                table = await self.tables.create(
                    TableCreate(name=table_name, description=description, columns=columns)
                )
                created_ids.append(table.id)
            memory_id, tool_log_id = created_ids

            agent = AgentDefinition(
                name=data.name,
                system_prompt=data.system_prompt,
                model=data.model,
                max_tokens=clamp_max_tokens(data.model, data.max_tokens),
                temperature=data.temperature,
                n_latest_messages=data.n_latest_messages,
                max_iterations=data.max_iterations,
                tool_names=list(data.tool_names),
                memory_table_id=memory_id,
                tool_log_table_id=tool_log_id,
            )
            self.db.add(agent)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            for table_id in created_ids:
                await self.tables.delete(table_id)
            raise
        await self.db.refresh(agent)
        logger.info(f"Created agent '{agent.name}' with tools {agent.tool_names}")
        return agent

    async def get_agent(self, name: str) -> AgentDefinition:
        agent = await self._find(name)
        if agent is None:
            raise AgentNotFoundError(name)
        return agent

    async def list_agents(self) -> List[AgentDefinition]:
        result = await self.db.execute(select(AgentDefinition).order_by(AgentDefinition.name))
        return list(result.scalars().all())

    async def delete_agent(self, name: str) -> bool:
        """Delete an agent and both of its managed tables."""
        agent = await self.get_agent(name)
        table_ids = [agent.memory_table_id, agent.tool_log_table_id]
        await self.db.delete(agent)
        await self.db.commit()
        for table_id in table_ids:
            await self.tables.delete(table_id)
        logger.info(f"Deleted agent '{name}'")
        return True

    # =========================================================================
    # Memory
    # =========================================================================

    async def history(self, name: str, limit: Optional[int] = None) -> List[MemoryMessage]:
        """Stored messages, oldest first. With limit, only the latest ones."""
        agent = await self.get_agent(name)
        rows = await self._memory_rows(agent, limit)
        return [
            MemoryMessage(
                row_id=row.id,
                role=row.data.get("role"),
                content=row.data.get("content") or "",
                timestamp=row.data.get("timestamp"),
            )
            for row in rows
        ]

    async def clear_memory(self, name: str) -> int:
        """Delete all memory and tool log rows. Returns the number of memory rows removed."""
        agent = await self.get_agent(name)
        removed = await self.rows.delete_all(agent.memory_table_id)
        await self.rows.delete_all(agent.tool_log_table_id)
        logger.info(f"Cleared {removed} memory rows for agent '{name}'")
        return removed

    # =========================================================================
    # Chat
    # =========================================================================

    async def chat(
        self,
        name: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> ChatResponse:
        """Run one conversation turn and return the reply."""
        with agent_log_context(name):
            agent, messages, tools = await self._prepare_turn(name, message)

            final = None
            async for event in run_agent_loop(
                client=self.client,
                model=agent.model,
                max_tokens=agent.max_tokens,
                max_iterations=agent.max_iterations,
                system_prompt=agent.system_prompt,
                messages=messages,
                tools=tools,
                db=self.db,
                context=context,
                cancellation_token=cancellation_token,
                stream_text=False,
                temperature=agent.temperature,
            ):
                if isinstance(event, AgentFinished):
                    final = event

            if isinstance(final, AgentError):
                raise AgentRunError(final.error)

            return await self._finish_turn(agent, final)

    async def stream_chat(
        self,
        name: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> AsyncGenerator[str, None]:
        """
        Run one conversation turn, yielding StreamEvent JSON strings for SSE.

        Lookup failures are raised before the first event so the router can
        return a normal error response.
        """
        agent, messages, tools = await self._prepare_turn(name, message)
        return self._stream_events(agent, messages, tools, context, cancellation_token)

    async def _stream_events(
        self,
        agent: AgentDefinition,
        messages: List[Dict[str, Any]],
        tools: Dict[str, Any],
        context: Optional[Dict[str, Any]],
        cancellation_token: Optional[CancellationToken],
    ) -> AsyncGenerator[str, None]:
        # sse-starlette iterates this in its own task, so the binding dies with it
        bind_agent(agent.name)
        try:
            async for event in run_agent_loop(
                client=self.client,
                model=agent.model,
                max_tokens=agent.max_tokens,
                max_iterations=agent.max_iterations,
                system_prompt=agent.system_prompt,
                messages=messages,
                tools=tools,
                db=self.db,
                context=context,
                cancellation_token=cancellation_token,
                stream_text=True,
                temperature=agent.temperature,
            ):
                if isinstance(event, AgentThinking):
                    yield StatusEvent(message=event.message).model_dump_json()

                elif isinstance(event, AgentTextDelta):
                    yield TextDeltaEvent(text=event.text).model_dump_json()

                elif isinstance(event, AgentToolStart):
                    yield ToolStartEvent(
                        tool=event.tool_name,
                        input=event.tool_input,
                        tool_use_id=event.tool_use_id,
                    ).model_dump_json()

                elif isinstance(event, AgentToolProgress):
                    yield ToolProgressEvent(
                        tool=event.tool_name,
                        stage=event.stage,
                        message=event.message,
                        progress=event.progress,
                    ).model_dump_json()

                elif isinstance(event, AgentToolComplete):
                    yield ToolCompleteEvent(tool=event.call.tool_name, output=event.call.output).model_dump_json()

                elif isinstance(event, AgentError):
                    yield ErrorEvent(message=event.error).model_dump_json()
                    return

                elif isinstance(event, AgentCancelled):
                    await self._finish_turn(agent, event)
                    yield CancelledEvent().model_dump_json()
                    return

                elif isinstance(event, AgentComplete):
                    response = await self._finish_turn(agent, event)
                    yield CompleteEvent(payload=response).model_dump_json()

        except Exception as e:
            logger.error(f"Error streaming chat for agent '{agent.name}': {e}", exc_info=True)
            yield ErrorEvent(message=f"Service error: {str(e)}").model_dump_json()

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _find(self, name: str) -> Optional[AgentDefinition]:
        result = await self.db.execute(select(AgentDefinition).where(AgentDefinition.name == name))
        return result.scalars().first()

    async def _memory_rows(self, agent: AgentDefinition, limit: Optional[int]) -> List[TableRow]:
        query = (
            select(TableRow)
            .where(TableRow.table_id == agent.memory_table_id)
            .order_by(TableRow.id.desc())
        )
        if limit is not None:
            query = query.limit(limit)
        result = await self.db.execute(query)
        return list(reversed(result.scalars().all()))

    async def _table(self, table_id: int) -> TableDefinition:
        return await self.tables.get(table_id)

    async def _prepare_turn(
        self, name: str, message: str
    ) -> Tuple[AgentDefinition, List[Dict[str, Any]], Dict[str, Any]]:
        """Load history, store the user message and resolve the agent's tools."""
        agent = await self.get_agent(name)
        if not message.strip():
            raise ValidationError("Message cannot be empty")

        history_rows = []
        if agent.n_latest_messages > 0:
            history_rows = await self._memory_rows(agent, agent.n_latest_messages)
        messages = build_history(history_rows)
        if messages and messages[-1]["role"] == "user":
            messages[-1]["content"] += "\n\n" + message
        else:
            messages.append({"role": "user", "content": message})

        memory_table = await self._table(agent.memory_table_id)
        await self.rows.create(
            memory_table,
            {"role": "user", "content": message, "timestamp": _now()},
            on_error=OnError.IGNORE,
            enforce_limit=False,
        )

        return agent, messages, resolve_agent_tools(agent.tool_names)

    async def _finish_turn(self, agent: AgentDefinition, event) -> ChatResponse:
        """Persist the assistant reply and tool calls, and build the response."""
        trace: Optional[AgentTrace] = event.trace
        timestamp = _now()

        if event.tool_calls:
            tool_table = await self._table(agent.tool_log_table_id)
            await self.rows.create_many(
                tool_table,
                [
                    {
                        "tool_name": call.tool_name,
                        "tool_input": call.tool_input,
                        "output": call.output,
                        "timestamp": timestamp,
                    }
                    for call in event.tool_calls
                ],
                on_error=OnError.IGNORE,
                enforce_limit=False,
            )

        if event.text:
            memory_table = await self._table(agent.memory_table_id)
            await self.rows.create(
                memory_table,
                {"role": "assistant", "content": event.text, "timestamp": timestamp},
                on_error=OnError.IGNORE,
                enforce_limit=False,
            )

        usage = TokenUsage()
        if trace:
            usage = TokenUsage(
                input_tokens=trace.total_input_tokens,
                output_tokens=trace.total_output_tokens,
            )
        return ChatResponse(
            agent=agent.name,
            text=event.text,
            tool_calls=[call.to_record() for call in event.tool_calls],
            trace_id=trace.trace_id if trace else None,
            outcome=trace.outcome if trace else "complete",
            usage=usage,
        )


async def get_agent_service(db: AsyncSession = Depends(get_async_db)) -> AgentService:
    """Dependency injection provider."""
    return AgentService(db)
