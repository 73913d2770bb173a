"""
Column Function Registry

Functions that computed columns apply to other columns.

A function is a plain callable that receives keyword arguments: one per
input column (mapped by the column's ComputedSpec.inputs) plus any literal
params. It may be sync or async; the materializer awaits async functions and
runs sync ones inline.

null_safe=False (the default) means the function is skipped and the cell set
to null when any input column is null.
"""

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from agentable.schemas.table import ColumnType


ColumnFunction = Callable[..., Union[Any, Awaitable[Any]]]


@dataclass
class FunctionConfig:
    """Configuration for a function usable by computed columns."""
    name: str                           # Function name (e.g., "anthropic.text")
    description: str                    # Human-readable description
    executor: ColumnFunction            # def f(**kwargs) or async def f(**kwargs)
    return_type: ColumnType             # Type the result is coerced to
    parameters: List[str] = field(default_factory=list)  # Accepted keyword arguments
    category: str = "general"           # Function category for organization
    null_safe: bool = False             # If True, called even when inputs are null

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.executor)

    async def call(self, **kwargs) -> Any:
        if self.is_async:
            return await self.executor(**kwargs)
        return self.executor(**kwargs)


# =============================================================================
# Global Registry
# =============================================================================

_function_registry: Dict[str, FunctionConfig] = {}


def register_function(function: FunctionConfig) -> None:
    """Register a function in the global registry."""
    _function_registry[function.name] = function


def get_function(name: str) -> Optional[FunctionConfig]:
    """Get a function by name."""
    return _function_registry.get(name)


def get_all_functions() -> List[FunctionConfig]:
    """Get all registered functions."""
    return list(_function_registry.values())


def get_functions_by_category(category: str) -> List[FunctionConfig]:
    """Get all functions in a specific category."""
    return [f for f in _function_registry.values() if f.category == category]


def column_function(
    name: str,
    return_type: ColumnType,
    description: str = "",
    category: str = "general",
    null_safe: bool = False,
    parameters: Optional[List[str]] = None,
):
    """Decorator form of register_function."""
    def decorator(fn: ColumnFunction) -> ColumnFunction:
        register_function(FunctionConfig(
            name=name,
            description=description or (fn.__doc__ or "").strip().split("\n")[0],
            executor=fn,
            return_type=return_type,
            parameters=parameters or [],
            category=category,
            null_safe=null_safe,
        ))
        return fn
    return decorator
