"""
Text and JSON column functions.
"""

import json
import re
from typing import Any, Optional

from agentable.functions.registry import column_function
from agentable.schemas.table import ColumnType


@column_function("upper", ColumnType.TEXT, category="text", parameters=["value"])
def upper(value: Any) -> str:
    """Uppercase a text value."""
    return str(value).upper()


@column_function("lower", ColumnType.TEXT, category="text", parameters=["value"])
def lower(value: Any) -> str:
    """Lowercase a text value."""
    return str(value).lower()


@column_function("strip", ColumnType.TEXT, category="text", parameters=["value"])
def strip(value: Any) -> str:
    """Trim surrounding whitespace."""
    return str(value).strip()


@column_function("length", ColumnType.NUMBER, category="text", parameters=["value"])
def length(value: Any) -> int:
    """Number of characters (or items, for lists)."""
    if isinstance(value, (list, dict)):
        return len(value)
    return len(str(value))


@column_function("concat", ColumnType.TEXT, category="text", parameters=["a", "b", "separator"])
def concat(a: Any, b: Any, separator: str = " ") -> str:
    """Join two values with a separator."""
    return f"{a}{separator}{b}"


_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


@column_function("format", ColumnType.TEXT, category="text", parameters=["template"])
def format_template(template: str, **values: Any) -> str:
    """
    Fill {name} placeholders in a template from the other arguments.

    Unlike str.format, braces that don't name a supplied value are left as is,
    so prompts containing JSON examples survive.
    """
    def _sub(match: re.Match) -> str:
        key = match.group(1)
        if key not in values:
            return match.group(0)
        value = values[key]
        if isinstance(value, list):
            return ", ".join(str(v) for v in value)
        if isinstance(value, dict):
            return json.dumps(value, default=str)
        return str(value)

    return _PLACEHOLDER.sub(_sub, template)


_PATH_TOKEN = re.compile(r"([^.\[\]]+)|\[(-?\d+)\]")


def _walk(value: Any, path: str) -> Any:
    current = value
    for key, index in _PATH_TOKEN.findall(path):
        if current is None:
            return None
        if index:
            if not isinstance(current, list):
                raise TypeError(f"Cannot index {type(current).__name__} with [{index}]")
            i = int(index)
            if i >= len(current) or i < -len(current):
                return None
            current = current[i]
        else:
            if isinstance(current, dict):
                current = current.get(key)
            elif isinstance(current, list) and key.isdigit():
                i = int(key)
                current = current[i] if i < len(current) else None
            else:
                raise TypeError(f"Cannot read '{key}' from {type(current).__name__}")
    return current


@column_function("json_path", ColumnType.JSON, category="json", parameters=["value", "path"])
def json_path(value: Any, path: str) -> Optional[Any]:
    """Extract a nested value, e.g. path='content[0].text' on a model response."""
    if isinstance(value, str):
        value = json.loads(value)
    return _walk(value, path)
