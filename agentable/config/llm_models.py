"""
Configuration for LLM models and their capabilities
"""

from typing import Dict, List, Optional
from pydantic import BaseModel


class ModelCapabilities(BaseModel):
    """Capabilities and parameters supported by a model"""
    max_output_tokens: int = 8192
    context_window: int = 200000
    supports_temperature: bool = True
    supports_vision: bool = True
    supports_tool_use: bool = True
    tier: str = "standard"  # "fast" | "standard" | "frontier"


# Model configurations with their capabilities
MODEL_CONFIGS: Dict[str, ModelCapabilities] = {
    "claude-haiku-4-5-20251001": ModelCapabilities(
        max_output_tokens=64000,
        tier="fast",
    ),
    "claude-3-5-haiku-20241022": ModelCapabilities(
        max_output_tokens=8192,
        supports_vision=False,
        tier="fast",
    ),
    "claude-sonnet-4-20250514": ModelCapabilities(
        max_output_tokens=64000,
    ),
    "claude-sonnet-4-5-20250929": ModelCapabilities(
        max_output_tokens=64000,
    ),
    "claude-opus-4-1-20250805": ModelCapabilities(
        max_output_tokens=32000,
        tier="frontier",
    ),
}

# Default model per workload
TASK_MODELS: Dict[str, str] = {
    "agent": "claude-sonnet-4-20250514",
    "column_inference": "claude-haiku-4-5-20251001",
    "classification": "claude-haiku-4-5-20251001",
    "compute_fallback": "claude-haiku-4-5-20251001",
}


def is_known_model(model: str) -> bool:
    return model in MODEL_CONFIGS


def get_model_capabilities(model: str) -> ModelCapabilities:
    """Capabilities for a model. Unknown models get the defaults."""
    return MODEL_CONFIGS.get(model, ModelCapabilities())


def supports_temperature(model: str) -> bool:
    return get_model_capabilities(model).supports_temperature


def clamp_max_tokens(model: str, max_tokens: int) -> int:
    """Limit max_tokens to what the model can produce."""
    return min(max_tokens, get_model_capabilities(model).max_output_tokens)


def get_task_model(task: str) -> Optional[str]:
    return TASK_MODELS.get(task)


def list_models() -> List[str]:
    return list(MODEL_CONFIGS.keys())
