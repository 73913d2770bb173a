"""
Built-in Column Functions

Auto-imports all function modules to register them with the global registry.
"""

from agentable.functions.builtin import text
from agentable.functions.builtin import compute
from agentable.functions.builtin import llm
