"""
compute_value: evaluate a formula for the agent.

Arithmetic goes through the same evaluator as the `formula` column function.
Whatever it rejects (words, unit conversions, date math) is handed to a small
model along with the substituted data.
"""

import logging
from typing import Any, Dict, Optional

import anthropic
from sqlalchemy.ext.asyncio import AsyncSession

from agentable.functions.builtin.compute import FormulaError, safe_eval
from agentable.functions.builtin.llm import create_message, response_text
from agentable.tools.registry import tool

logger = logging.getLogger(__name__)

FALLBACK_SYSTEM = (
    "Evaluate the formula using the data provided. "
    "Reply with the result only: no explanation, no units unless the formula asks for them."
)


async def _model_answer(formula: str, data: Dict[str, Any]) -> Optional[str]:
    parts = [f"Formula: {formula}"]
    known = [f"- {key}: {value}" for key, value in data.items() if value is not None]
    if known:
        parts.append("Data:\n" + "\n".join(known))
    parts.append("Compute the result.")

    response = await create_message(
        "\n\n".join(parts),
        model=None,
        max_tokens=256,
        system=FALLBACK_SYSTEM,
        temperature=None,
        task="compute_fallback",
    )
    return response_text(response).strip() or None


@tool(
    "compute_value",
    "Evaluate a formula or expression, e.g. '15 * 23' or '{Price} * {Quantity}' with data "
    "{\"Price\": 10, \"Quantity\": 5}. Expressions that are not plain arithmetic are worked out by a model.",
    {
        "type": "object",
        "properties": {
            "formula": {"type": "string", "description": "Formula with optional {Key} placeholders"},
            "data": {"type": "object", "description": "Values for the placeholders"},
        },
        "required": ["formula"],
    },
    category="compute",
)
async def compute_value(params: Dict[str, Any], db: AsyncSession, context: Dict[str, Any]) -> str:
    formula = (params.get("formula") or "").strip()
    if not formula:
        return "Error: formula is required."
    data = params.get("data") or {}

    try:
        return str(safe_eval(formula, data))
    except FormulaError as e:
        logger.debug(f"compute_value falling back to the model: {e}")

    token = context.get("_cancellation_token")
    if token is not None and token.is_cancelled:
        return "Error: Cancelled."

    try:
        answer = await _model_answer(formula, data)
    except anthropic.APIError as e:
        logger.warning(f"compute_value model fallback failed: {e}")
        answer = None
    return answer or "Error: Could not compute result."
