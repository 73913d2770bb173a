"""
Agent tools: the registry plus the built-in table and compute tools.
"""

from agentable.tools.registry import (
    ToolProgress,
    ToolResult,
    ToolConfig,
    tool,
    register_tool,
    unregister_tool,
    get_tool,
    get_all_tools,
    get_global_tools,
    get_tools_by_names,
    get_tools_by_category,
    unknown_tool_names,
    resolve_agent_tools,
    tools_to_anthropic_format,
    tools_to_dict,
)

# Registers the built-in tools
from agentable.tools import builtin

__all__ = [
    "ToolProgress",
    "ToolResult",
    "ToolConfig",
    "tool",
    "register_tool",
    "unregister_tool",
    "get_tool",
    "get_all_tools",
    "get_global_tools",
    "get_tools_by_names",
    "get_tools_by_category",
    "unknown_tool_names",
    "resolve_agent_tools",
    "tools_to_anthropic_format",
    "tools_to_dict",
]
