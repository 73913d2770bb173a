"""
Log records carry the request id and agent name of the work that emitted them.
"""

import json
import logging

import pytest

from agentable.config.logging_config import (
    ContextFilter,
    JsonFormatter,
    agent_log_context,
    bind_request_id,
    reset_request_id,
)
from agentable.middleware.logging_middleware import mask_sensitive
from helpers import text_response


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []
        self.addFilter(ContextFilter())

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def captured():
    """Collect records from the agentable loggers, passed through ContextFilter."""
    handler = ListHandler()
    logger = logging.getLogger("agentable")
    previous = logger.level
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)
    yield handler.records
    logger.removeHandler(handler)
    logger.setLevel(previous)


class TestContextFilter:

    def test_defaults_outside_any_request(self, captured):
        logging.getLogger("agentable.test").info("idle")
        assert (captured[0].request_id, captured[0].agent) == ("-", "-")

    def test_bound_values_and_reset(self, captured):
        log = logging.getLogger("agentable.test")
        token = bind_request_id("req-1")
        try:
            with agent_log_context("helper"):
                log.info("inside")
            log.info("after agent")
        finally:
            reset_request_id(token)
        log.info("after request")

        assert [(r.request_id, r.agent) for r in captured] == [
            ("req-1", "helper"),
            ("req-1", "-"),
            ("-", "-"),
        ]

    def test_explicit_extra_wins(self, captured):
        token = bind_request_id("req-2")
        try:
            logging.getLogger("agentable.test").info("boot", extra={"request_id": "startup"})
        finally:
            reset_request_id(token)
        assert captured[0].request_id == "startup"


class TestJsonFormatter:

    def test_includes_context_and_extras(self):
        record = logging.LogRecord("agentable.http", logging.INFO, __file__, 10, "Response: %s", (200,), None)
        record.request_id = "req-3"
        record.agent = "-"
        record.status_code = 200
        record.duration_ms = 12.5

        entry = json.loads(JsonFormatter().format(record))

        assert entry["message"] == "Response: 200"
        assert entry["request_id"] == "req-3"
        assert entry["status_code"] == 200
        assert entry["duration_ms"] == 12.5
        assert "args" not in entry
        assert "exception" not in entry


class TestRequestScope:
    """Records emitted while serving a request carry its id and the agent's name."""

    async def test_chat_records_are_tagged(self, api_client, fake_llm, captured):
        response = await api_client.post("/api/agents", json={"name": "clerk"})
        assert response.status_code == 201

        fake_llm.script(text_response("Hello."))
        response = await api_client.post(
            "/api/agents/clerk/chat",
            json={"message": "hi"},
            headers={"X-Request-ID": "req-42"},
        )
        assert response.status_code == 200

        turn_records = [r for r in captured if r.name == "agentable.agents.agent_loop"]
        assert turn_records
        assert {(r.request_id, r.agent) for r in turn_records} == {("req-42", "clerk")}


class TestMasking:

    def test_sensitive_keys_are_masked_at_any_depth(self):
        data = {"name": "clerk", "api_key": "sk-1", "nested": [{"Authorization": "Bearer x", "ok": 1}]}
        assert mask_sensitive(data) == {
            "name": "clerk",
            "api_key": "********",
            "nested": [{"Authorization": "********", "ok": 1}],
        }
