"""
Agent tool registry.

A tool is a JSON-schema description the model sees plus an executor
`(params, db, context)` that runs it. Executors may be plain or async
functions returning text (or a ToolResult), or generators that yield
ToolProgress while they work and finish with a ToolResult.

Tools marked is_global make up the default tool set of an agent created
without an explicit tool list; the rest must be asked for by name.
"""

import inspect
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

Executor = Callable[[Dict[str, Any], Any, Dict[str, Any]], Any]


@dataclass
class ToolProgress:
    """Intermediate update from a long-running tool."""
    stage: str
    message: str
    progress: float = 0.0  # 0.0 to 1.0


@dataclass
class ToolResult:
    """Final result of a tool: text for the model, plus optional structured data for API callers."""
    text: str
    data: Any = None


@dataclass
class ToolConfig:
    name: str
    description: str
    input_schema: Dict[str, Any]
    executor: Executor
    streaming: bool = False
    category: str = "general"
    is_global: bool = True

    def to_anthropic(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "input_schema": self.input_schema}


class ToolRegistry:
    """Name -> ToolConfig, in registration order."""

    def __init__(self):
        self._tools: Dict[str, ToolConfig] = {}

    def register(self, tool: ToolConfig) -> ToolConfig:
        self._tools[tool.name] = tool
        return tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Optional[ToolConfig]:
        return self._tools.get(name)

    def all(self) -> List[ToolConfig]:
        return list(self._tools.values())

    def select(self, names: Iterable[str]) -> List[ToolConfig]:
        """Registered tools among `names`, in the order given. Unknown names are skipped."""
        return [self._tools[n] for n in names if n in self._tools]

    def unknown(self, names: Iterable[str]) -> List[str]:
        return [n for n in names if n not in self._tools]


_registry = ToolRegistry()


def tool(
    name: str,
    description: str,
    input_schema: Optional[Dict[str, Any]] = None,
    category: str = "general",
    is_global: bool = True,
):
    """
    Register the decorated function as an agent tool.

    Generator executors are registered as streaming tools.
    """
    def decorator(fn: Executor) -> Executor:
        _registry.register(ToolConfig(
            name=name,
            description=description,
            input_schema=input_schema or {"type": "object", "properties": {}},
            executor=fn,
            streaming=inspect.isasyncgenfunction(fn) or inspect.isgeneratorfunction(fn),
            category=category,
            is_global=is_global,
        ))
        return fn
    return decorator


def register_tool(tool: ToolConfig) -> None:
    _registry.register(tool)


def unregister_tool(name: str) -> None:
    _registry.unregister(name)


def get_tool(name: str) -> Optional[ToolConfig]:
    return _registry.get(name)


def get_all_tools() -> List[ToolConfig]:
    return _registry.all()


def get_global_tools() -> List[ToolConfig]:
    return [t for t in _registry.all() if t.is_global]


def get_tools_by_names(names: List[str]) -> List[ToolConfig]:
    return _registry.select(names)


def get_tools_by_category(category: str) -> List[ToolConfig]:
    return [t for t in _registry.all() if t.category == category]


def unknown_tool_names(names: List[str]) -> List[str]:
    return _registry.unknown(names)


def resolve_agent_tools(names: Optional[List[str]]) -> Dict[str, ToolConfig]:
    """The tool set for an agent: the named tools, or every global tool when none are named."""
    selected = _registry.select(names) if names else get_global_tools()
    return tools_to_dict(selected)


def tools_to_anthropic_format(tools: List[ToolConfig]) -> List[Dict[str, Any]]:
    return [t.to_anthropic() for t in tools]


def tools_to_dict(tools: List[ToolConfig]) -> Dict[str, ToolConfig]:
    return {t.name: t for t in tools}
