"""
Model inference column functions.

These call the hosted model API once per row. `anthropic.messages` stores the
whole response (use json_path to pull fields out of it); `anthropic.text`
stores only the reply text; `anthropic.classify` constrains the reply to one
of a fixed set of labels.
"""

import logging
from typing import Any, Dict, List, Optional

from agentable.agents.llm_client import get_llm_client
from agentable.config.llm_models import clamp_max_tokens, get_task_model, supports_temperature
from agentable.config.settings import settings
from agentable.functions.registry import column_function
from agentable.schemas.table import ColumnType

logger = logging.getLogger(__name__)


async def create_message(
    prompt: Any,
    model: Optional[str],
    max_tokens: Optional[int],
    system: Optional[str],
    temperature: Optional[float],
    task: str,
):
    model = model or get_task_model(task) or settings.DEFAULT_MODEL
    max_tokens = clamp_max_tokens(model, int(max_tokens or settings.DEFAULT_MAX_TOKENS))

    kwargs: Dict[str, Any] = {
        "model": model,
        "max_tokens": max_tokens,
        "messages": [{"role": "user", "content": str(prompt)}],
    }
    if system:
        kwargs["system"] = system
    if temperature is not None and supports_temperature(model):
        kwargs["temperature"] = float(temperature)

    logger.debug(f"Column inference call: model={model} max_tokens={max_tokens}")
    client = get_llm_client()
    return await client.messages.create(**kwargs)


def response_text(response: Any) -> str:
    return "".join(
        block.text for block in response.content
        if getattr(block, "type", None) == "text"
    )


def _response_to_dict(response: Any) -> Dict[str, Any]:
    if hasattr(response, "model_dump"):
        return response.model_dump(mode="json")
    return {
        "id": getattr(response, "id", None),
        "model": getattr(response, "model", None),
        "role": "assistant",
        "stop_reason": getattr(response, "stop_reason", None),
        "content": [
            {"type": "text", "text": block.text}
            for block in response.content
            if getattr(block, "type", None) == "text"
        ],
    }


@column_function(
    "anthropic.messages",
    ColumnType.JSON,
    category="llm",
    parameters=["prompt", "model", "max_tokens", "system", "temperature"],
)
async def messages(
    prompt: Any,
    model: Optional[str] = None,
    max_tokens: Optional[int] = None,
    system: Optional[str] = None,
    temperature: Optional[float] = None,
) -> Dict[str, Any]:
    """Send the prompt to the Messages API and return the full response."""
    response = await create_message(prompt, model, max_tokens, system, temperature, "column_inference")
    return _response_to_dict(response)


@column_function(
    "anthropic.text",
    ColumnType.TEXT,
    category="llm",
    parameters=["prompt", "model", "max_tokens", "system", "temperature"],
)
async def text(
    prompt: Any,
    model: Optional[str] = None,
    max_tokens: Optional[int] = None,
    system: Optional[str] = None,
    temperature: Optional[float] = None,
) -> str:
    """Send the prompt to the Messages API and return only the reply text."""
    response = await create_message(prompt, model, max_tokens, system, temperature, "column_inference")
    return response_text(response)


@column_function(
    "anthropic.classify",
    ColumnType.SELECT,
    category="llm",
    parameters=["text", "labels", "model", "instructions"],
)
async def classify(
    text: Any,
    labels: List[str],
    model: Optional[str] = None,
    instructions: Optional[str] = None,
) -> str:
    """Pick exactly one of `labels` for the text."""
    if not labels:
        raise ValueError("classify requires at least one label")

    system = (
        "You are a classifier. Reply with exactly one label from the list and nothing else.\n"
        f"Labels: {', '.join(labels)}"
    )
    if instructions:
        system += f"\n\n{instructions}"

    response = await create_message(text, model, 16, system, 0.0, "classification")
    answer = response_text(response).strip().strip(".").strip()

    for label in labels:
        if answer.lower() == label.lower():
            return label
    for label in labels:
        if label.lower() in answer.lower():
            return label
    raise ValueError(f"Model answered '{answer}', which is not one of: {', '.join(labels)}")
