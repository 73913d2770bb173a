"""
Logging setup.

Every record carries the id of the HTTP request it belongs to and, inside a
chat turn, the name of the agent. Both live in context variables so that
concurrent requests and background SSE tasks keep their own values.
"""

import json
import logging
import logging.handlers
import os
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator

from .settings import settings

_request_id: ContextVar[str] = ContextVar("request_id", default="-")
_agent: ContextVar[str] = ContextVar("agent", default="-")

# Attributes every LogRecord has; anything else came in through `extra`
_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}
_CONTEXT_ATTRS = {"request_id", "agent"}


def new_request_id() -> str:
    return str(uuid.uuid4())


def bind_request_id(request_id: str) -> Token:
    return _request_id.set(request_id)


def reset_request_id(token: Token) -> None:
    _request_id.reset(token)


def current_request_id() -> str:
    return _request_id.get()


def bind_agent(name: str) -> Token:
    return _agent.set(name)


@contextmanager
def agent_log_context(name: str) -> Iterator[None]:
    """Tag log records emitted inside the block with the agent's name."""
    token = _agent.set(name)
    try:
        yield
    finally:
        _agent.reset(token)


class ContextFilter(logging.Filter):
    """Copies the current request id and agent name onto each record."""

    def filter(self, record):
        if not hasattr(record, "request_id"):
            record.request_id = _request_id.get()
        if not hasattr(record, "agent"):
            record.agent = _agent.get()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record, including whatever was passed as `extra`."""

    def format(self, record):
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "request_id": getattr(record, "request_id", "-"),
            "agent": getattr(record, "agent", "-"),
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS and key not in _CONTEXT_ATTRS:
                entry[key] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _rotated_name(default_name: str) -> str:
    """Keep the .log suffix on rotated files (agentable.log.2025-11-02 -> agentable_2025-11-02.log)."""
    base_filename = default_name.replace(".log", "")
    parts = base_filename.rsplit(".", 1)
    if len(parts) == 2:
        return f"{parts[0]}_{parts[1]}.log"
    return default_name


def setup_logging() -> logging.Logger:
    """Configure the root logger from settings and return this module's logger."""
    if settings.LOG_FORMAT == "json":
        file_formatter = console_formatter = JsonFormatter()
    else:
        file_formatter = logging.Formatter(
            "%(asctime)s - %(levelname)s - [%(request_id)s] [%(agent)s] - %(name)s - %(message)s"
        )
        console_formatter = logging.Formatter("%(levelname)s - [%(request_id)s] [%(agent)s] - %(message)s")

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root_logger.handlers = []
    context_filter = ContextFilter()

    log_filename = None
    if settings.LOG_TO_FILE:
        os.makedirs(settings.LOG_DIR, exist_ok=True)
        log_filename = os.path.join(settings.LOG_DIR, f"{settings.LOG_FILENAME_PREFIX}.log")
        file_handler = logging.handlers.TimedRotatingFileHandler(
            log_filename,
            when="midnight",
            backupCount=settings.LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(file_formatter)
        file_handler.addFilter(context_filter)
        file_handler.namer = _rotated_name
        root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(console_formatter)
    console_handler.addFilter(context_filter)
    root_logger.addHandler(console_handler)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging to {log_filename or 'console only'}", extra={"request_id": "startup"})
    return logger
