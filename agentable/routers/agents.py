"""
Agents Router - agent definitions, chat (JSON and SSE), and memory.
"""

import asyncio
import logging
from fastapi import APIRouter, Depends, Query
from starlette.requests import Request
from sse_starlette.sse import EventSourceResponse
from typing import List, Optional

from agentable.agents.agent_loop import CancellationToken
from agentable.schemas.agent import (
    AgentCreate,
    AgentSchema,
    ChatRequest,
    ChatResponse,
    ErrorEvent,
    MemoryMessage,
)
from agentable.services.agent_service import AgentService, get_agent_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/agents", tags=["agents"])


@router.get("", response_model=List[AgentSchema])
async def list_agents(service: AgentService = Depends(get_agent_service)):
    return await service.list_agents()


@router.post("", response_model=AgentSchema, status_code=201)
async def create_agent(
    data: AgentCreate,
    service: AgentService = Depends(get_agent_service),
):
    """Create an agent and its memory and tool log tables."""
    return await service.create_agent(data)


@router.get("/{name}", response_model=AgentSchema)
async def get_agent(name: str, service: AgentService = Depends(get_agent_service)):
    return await service.get_agent(name)


@router.delete("/{name}")
async def delete_agent(name: str, service: AgentService = Depends(get_agent_service)):
    """Delete an agent along with its managed tables."""
    await service.delete_agent(name)
    return {"ok": True}


# =============================================================================
# Chat
# =============================================================================

@router.post("/{name}/chat", response_model=ChatResponse)
async def chat(
    name: str,
    request: ChatRequest,
    service: AgentService = Depends(get_agent_service),
):
    """Run one conversation turn and return the full reply."""
    return await service.chat(name, request.message, context=request.context)


@router.post("/{name}/chat/stream", response_class=EventSourceResponse)
async def chat_stream(
    name: str,
    request: ChatRequest,
    raw_request: Request,
    service: AgentService = Depends(get_agent_service),
) -> EventSourceResponse:
    """
    Run one conversation turn, streaming typed events over SSE:
    status, text_delta, tool_start, tool_progress, tool_complete,
    then complete, cancelled or error.
    """
    cancellation_token = CancellationToken()
    events = await service.stream_chat(
        name, request.message, context=request.context, cancellation_token=cancellation_token
    )

    async def monitor_disconnect():
        """Poll for client disconnection and trigger cancellation."""
        while not cancellation_token.is_cancelled:
            if await raw_request.is_disconnected():
                logger.info(f"Client disconnected, cancelling chat stream for agent '{name}'")
                cancellation_token.cancel()
                return
            await asyncio.sleep(0.5)

    async def event_generator():
        monitor_task = asyncio.create_task(monitor_disconnect())
        try:
            async for event_json in events:
                yield {"event": "message", "data": event_json}
        except Exception as e:
            logger.error(f"Error in chat stream: {str(e)}")
            yield {"event": "message", "data": ErrorEvent(message=str(e)).model_dump_json()}
        finally:
            monitor_task.cancel()

    return EventSourceResponse(event_generator(), ping=15)


# =============================================================================
# Memory
# =============================================================================

@router.get("/{name}/history", response_model=List[MemoryMessage])
async def get_history(
    name: str,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    service: AgentService = Depends(get_agent_service),
):
    """Stored conversation, oldest first."""
    return await service.history(name, limit=limit)


@router.delete("/{name}/memory")
async def clear_memory(name: str, service: AgentService = Depends(get_agent_service)):
    """Forget the conversation and tool log."""
    removed = await service.clear_memory(name)
    return {"ok": True, "deleted": removed}
