from .settings import settings
from .logging_config import (
    agent_log_context,
    bind_request_id,
    new_request_id,
    reset_request_id,
    setup_logging,
)

__all__ = [
    "settings",
    "setup_logging",
    "new_request_id",
    "bind_request_id",
    "reset_request_id",
    "agent_log_context",
]
