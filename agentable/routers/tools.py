"""
Tools Router - lists agent tools and runs one directly, outside any agent.
"""

import logging
from fastapi import APIRouter, Depends, Query
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from agentable.database import get_async_db
from agentable.exceptions import ToolNotFoundError
from agentable.tools import get_all_tools, get_tool, get_tools_by_category
from agentable.tools.executor import execute_tool

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tools", tags=["tools"])


class ToolInfo(BaseModel):
    name: str
    description: str
    input_schema: Dict[str, Any]
    category: str
    streaming: bool
    is_global: bool


class ToolExecuteRequest(BaseModel):
    """Request to run a tool directly."""
    input: Dict[str, Any] = Field(default_factory=dict, description="Tool parameters")
    context: Dict[str, Any] = Field(default_factory=dict, description="Context passed to the executor, e.g. table_id")


class ToolExecuteResponse(BaseModel):
    tool: str
    output: str
    data: Any = None
    is_error: bool = False


@router.get("", response_model=List[ToolInfo])
async def list_tools(category: Optional[str] = Query(None)):
    """List registered agent tools, optionally by category."""
    tools = get_tools_by_category(category) if category else get_all_tools()
    return [
        ToolInfo(
            name=t.name,
            description=t.description,
            input_schema=t.input_schema,
            category=t.category,
            streaming=t.streaming,
            is_global=t.is_global,
        )
        for t in sorted(tools, key=lambda t: t.name)
    ]


@router.post("/{name}/execute", response_model=ToolExecuteResponse)
async def execute_tool_directly(
    name: str,
    request: ToolExecuteRequest,
    db: AsyncSession = Depends(get_async_db),
):
    """Run a tool to completion and return its output."""
    tool_config = get_tool(name)
    if tool_config is None:
        raise ToolNotFoundError(name)

    logger.info(f"Direct tool execution: {name}")
    outcome = await execute_tool(tool_config, request.input, db, dict(request.context))
    return ToolExecuteResponse(
        tool=name,
        output=outcome.text,
        data=outcome.data,
        is_error=outcome.is_error,
    )
