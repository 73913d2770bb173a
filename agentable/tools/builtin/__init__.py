"""
Built-in tools. Importing a module registers its tools.
"""

from agentable.tools.builtin import table_data
from agentable.tools.builtin import compute
