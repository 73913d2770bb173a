"""
Shared Anthropic client.

Everything that talks to the model API (column inference functions, the
agent service) gets its client here, so a single override swaps it out.
"""

import logging
from typing import Any, Optional

import anthropic

from agentable.config.settings import settings

logger = logging.getLogger(__name__)

_client: Optional[Any] = None


def get_llm_client() -> anthropic.AsyncAnthropic:
    """Return the process-wide async client, creating it on first use."""
    global _client
    if _client is None:
        if not settings.anthropic_api_key:
            logger.warning("ANTHROPIC_API_KEY is not set; model calls will fail to authenticate")
        _client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
    return _client


def set_llm_client(client: Optional[Any]) -> None:
    """Replace the shared client. Pass None to rebuild from settings on next use."""
    global _client
    _client = client
