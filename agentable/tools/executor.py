"""
Runs one tool executor to completion, whatever its shape, and normalizes
what it returns. Used by the agent loop and by the tools router.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Dict, Union

from sqlalchemy.ext.asyncio import AsyncSession

from agentable.tools.registry import ToolConfig, ToolProgress, ToolResult

logger = logging.getLogger(__name__)


@dataclass
class ToolOutcome:
    text: str
    data: Any = None
    is_error: bool = False

    @classmethod
    def from_value(cls, value: Any) -> "ToolOutcome":
        if isinstance(value, ToolResult):
            return cls(text=value.text, data=value.data)
        if value is None:
            return cls(text="")
        return cls(text=value if isinstance(value, str) else str(value))


async def _drain_sync_generator(gen) -> AsyncGenerator[Any, None]:
    """Yield a sync generator's progress items, then its return value."""
    while True:
        try:
            item = next(gen)
        except StopIteration as stop:
            yield stop.value
            return
        yield item


async def iterate_tool(
    tool_config: ToolConfig,
    tool_input: Dict[str, Any],
    db: AsyncSession,
    context: Dict[str, Any],
) -> AsyncGenerator[Union[ToolProgress, ToolOutcome], None]:
    """
    Run a tool, yielding its ToolProgress updates and then exactly one ToolOutcome.

    An exception from the tool becomes an is_error outcome. Cancellation propagates.
    """
    final: Any = None
    try:
        if inspect.iscoroutinefunction(tool_config.executor):
            result = await tool_config.executor(tool_input, db, context)
        else:
            result = tool_config.executor(tool_input, db, context)

        if inspect.isasyncgen(result):
            items = result
        elif inspect.isgenerator(result):
            items = _drain_sync_generator(result)
        else:
            items = None
            final = result

        if items is not None:
            async for item in items:
                if isinstance(item, ToolProgress):
                    yield item
                else:
                    final = item
        outcome = ToolOutcome.from_value(final)

    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"Tool {tool_config.name} failed: {e}", exc_info=True)
        outcome = ToolOutcome(text=f"Error executing tool: {e}", is_error=True)

    yield outcome


async def execute_tool(
    tool_config: ToolConfig,
    tool_input: Dict[str, Any],
    db: AsyncSession,
    context: Dict[str, Any],
) -> ToolOutcome:
    """Run a tool to completion, discarding progress updates."""
    outcome = None
    async for item in iterate_tool(tool_config, tool_input, db, context):
        if isinstance(item, ToolOutcome):
            outcome = item
    return outcome
