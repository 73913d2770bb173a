"""
Formula evaluation.

Safe arithmetic over {Key} placeholders. Shared by the `formula` column
function and the compute_value agent tool.
"""

import ast
import logging
import re
from typing import Any, Dict, Optional

from agentable.functions.registry import column_function
from agentable.schemas.table import ColumnType

logger = logging.getLogger(__name__)

# Safe math operations for simple formula eval
_SAFE_NAMES = {
    "abs": abs, "round": round, "min": min, "max": max,
    "int": int, "float": float, "str": str, "len": len,
    "True": True, "False": False, "None": None,
}

MAX_EXPONENT = 100

_UNRESOLVED = re.compile(r'\{[^}]+\}')
_ALLOWED = re.compile(r'^[\d\s\+\-\*/%\(\)\.,<>=!a-zA-Z_\"\']+$')


class FormulaError(ValueError):
    """Raised when a formula cannot be evaluated safely."""
    pass


def resolve_placeholders(formula: str, data: Dict[str, Any]) -> str:
    """Substitute {Key} placeholders: numbers as numbers, everything else as a quoted string."""
    resolved = formula
    for key, val in data.items():
        placeholder = "{" + key + "}"
        if placeholder in resolved:
            if isinstance(val, bool):
                resolved = resolved.replace(placeholder, str(val))
                continue
            try:
                num_val = float(val) if val is not None else 0
                resolved = resolved.replace(placeholder, repr(num_val))
            except (ValueError, TypeError):
                resolved = resolved.replace(placeholder, repr(str(val) if val is not None else ""))
    return resolved


def _check_magnitude(tree: ast.AST) -> None:
    """Reject operators whose integer results can grow without bound."""
    for node in ast.walk(tree):
        if not isinstance(node, ast.BinOp):
            continue
        if isinstance(node.op, (ast.LShift, ast.RShift)):
            raise FormulaError("Bit shifts are not supported in formulas")
        if isinstance(node.op, ast.Mult) and any(
            isinstance(side, ast.Constant) and isinstance(side.value, str) for side in (node.left, node.right)
        ):
            raise FormulaError("Repeating text is not supported in formulas")
        if isinstance(node.op, ast.Pow):
            exponent = node.right
            if isinstance(exponent, ast.UnaryOp) and isinstance(exponent.op, (ast.UAdd, ast.USub)):
                exponent = exponent.operand
            if not (
                isinstance(exponent, ast.Constant)
                and isinstance(exponent.value, (int, float))
                and not isinstance(exponent.value, bool)
                and abs(exponent.value) <= MAX_EXPONENT
            ):
                raise FormulaError(f"Exponents must be number literals no larger than {MAX_EXPONENT}")


def safe_eval(formula: str, data: Dict[str, Any]) -> Any:
    """
    Evaluate a simple formula with placeholder substitution.

    Raises FormulaError when placeholders are left unresolved, the formula
    contains disallowed characters (or dunder access), or evaluation fails.
    """
    resolved = resolve_placeholders(formula, data)

    missing = _UNRESOLVED.findall(resolved)
    if missing:
        raise FormulaError(f"Unresolved placeholders: {', '.join(missing)}")

    if not _ALLOWED.match(resolved) or "__" in resolved:
        raise FormulaError(f"Formula contains disallowed characters: {formula}")

    try:
        tree = ast.parse(resolved, mode="eval")
    except SyntaxError as e:
        raise FormulaError(f"Could not parse '{formula}': {e.msg}") from e
    _check_magnitude(tree)

    try:
        return eval(compile(tree, "<formula>", "eval"), {"__builtins__": {}}, _SAFE_NAMES)
    except Exception as e:
        raise FormulaError(f"Could not evaluate '{formula}': {e}") from e


def try_safe_eval(formula: str, data: Dict[str, Any]) -> Optional[str]:
    """Like safe_eval, but returns the result as a string or None on failure."""
    try:
        return str(safe_eval(formula, data))
    except FormulaError:
        return None


@column_function("formula", ColumnType.NUMBER, category="compute", parameters=["formula"])
def formula(formula: str, **values: Any) -> Any:
    """Evaluate an arithmetic formula, e.g. '{price} * {quantity}'."""
    return safe_eval(formula, values)
