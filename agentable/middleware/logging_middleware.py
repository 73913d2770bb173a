"""
Per-request logging.

Binds the request id (taken from X-Request-ID or generated) for every record
logged while the request is served, logs one line when it arrives and one
when it completes, and echoes the id back in the response headers. Bodies
are logged only when LOG_REQUEST_BODY / LOG_RESPONSE_BODY are set, with
sensitive keys masked.
"""

import json
import logging
import time
from typing import Any, Dict

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from agentable.config.logging_config import bind_request_id, new_request_id, reset_request_id
from agentable.config.settings import settings

logger = logging.getLogger(__name__)

MASK = "********"
MAX_RAW_BODY = 1000


class LoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or new_request_id()
        request.state.request_id = request_id
        token = bind_request_id(request_id)
        started = time.perf_counter()
        try:
            logger.info(f"{request.method} {request.url.path}", extra=await self._request_fields(request))
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    f"{request.method} {request.url.path} raised",
                    extra={"duration_ms": _elapsed_ms(started)},
                )
                raise
            self._log_completion(request, response, _elapsed_ms(started))
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            reset_request_id(token)

    async def _request_fields(self, request: Request) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "method": request.method,
            "path": request.url.path,
            "query_params": dict(request.query_params),
            "client_host": request.client.host if request.client else None,
        }
        if settings.LOG_LEVEL == "DEBUG":
            fields["headers"] = mask_sensitive(dict(request.headers))
        if settings.LOG_REQUEST_BODY and request.headers.get("content-type", "").startswith("application/json"):
            fields["body"] = _loggable_body(await request.body())
        return fields

    def _log_completion(self, request: Request, response: Response, duration_ms: float) -> None:
        fields: Dict[str, Any] = {
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
        # Streaming responses have no body attribute
        if settings.LOG_RESPONSE_BODY and hasattr(response, "body"):
            fields["body"] = _loggable_body(response.body)

        status = response.status_code
        slow = duration_ms > settings.LOG_PERFORMANCE_THRESHOLD_MS
        if status >= 500:
            level = logging.ERROR
        elif status >= 400 or slow:
            level = logging.WARNING
        else:
            level = logging.INFO
        note = " (slow)" if slow and status < 400 else ""
        logger.log(level, f"{request.method} {request.url.path} -> {status} in {duration_ms:.2f}ms{note}", extra=fields)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


def _loggable_body(body: bytes) -> Any:
    try:
        return mask_sensitive(json.loads(body))
    except ValueError:
        if len(body) < MAX_RAW_BODY:
            return body.decode("utf-8", errors="replace")
        return f"<{len(body)} bytes>"


def mask_sensitive(data: Any) -> Any:
    """Replace the values of sensitive keys, at any depth."""
    if isinstance(data, dict):
        return {
            key: MASK if _is_sensitive(key) else mask_sensitive(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [mask_sensitive(item) for item in data]
    return data


def _is_sensitive(key: str) -> bool:
    lowered = str(key).lower()
    return any(sensitive in lowered for sensitive in settings.LOG_SENSITIVE_FIELDS)
