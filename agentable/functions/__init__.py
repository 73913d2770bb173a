"""
Column function system

Provides the functions computed columns are built from.
"""

from agentable.functions.registry import (
    FunctionConfig,
    register_function,
    get_function,
    get_all_functions,
    get_functions_by_category,
    column_function,
)

# Import builtin functions to auto-register them
from agentable.functions import builtin

__all__ = [
    "FunctionConfig",
    "register_function",
    "get_function",
    "get_all_functions",
    "get_functions_by_category",
    "column_function",
]
