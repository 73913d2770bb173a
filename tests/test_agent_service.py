"""
AgentService: agent definitions, memory tables and conversation turns.
"""

import json
from types import SimpleNamespace

import anthropic
import httpx
import pytest

from agentable.config.settings import settings
from agentable.exceptions import (
    AgentNotFoundError,
    AgentRunError,
    ConflictError,
    DuplicateAgentError,
    DuplicateTableError,
    RowLimitError,
    TableNotFoundError,
    ValidationError,
)
from agentable.schemas.agent import AgentCreate
from agentable.schemas.table import ColumnDefinition, TableCreate
from agentable.services.agent_service import AgentService, build_history
from agentable.services.row_service import RowService
from agentable.services.table_service import TableService
from agentable.tools import get_global_tools
from helpers import text_response, tool_response


@pytest.fixture
def service(db, fake_llm):
    return AgentService(db)


@pytest.fixture
async def helper(service):
    return await service.create_agent(AgentCreate(
        name="helper",
        system_prompt="You help with tables.",
        tool_names=["list_tables", "compute_value"],
        max_tokens=1_000_000,
    ))


# ═══════════════════════════════════════════════════════════════════════════
# Definitions
# ═══════════════════════════════════════════════════════════════════════════


class TestAgentDefinitions:
    """Creating and deleting agents together with their managed tables."""

    async def test_create_agent_creates_tables(self, db, service, helper):
        tables = TableService(db)
        memory = await tables.get(helper.memory_table_id)
        tool_log = await tables.get(helper.tool_log_table_id)

        assert memory.name == "helper_memory"
        assert tool_log.name == "helper_tools"
        assert [c["id"] for c in memory.columns] == ["role", "content", "timestamp"]
        assert helper.max_tokens == 64000
        assert [a.name for a in await service.list_agents()] == ["helper"]

    async def test_create_agent_rejects_bad_definitions(self, service, helper):
        with pytest.raises(DuplicateAgentError):
            await service.create_agent(AgentCreate(name="helper"))
        with pytest.raises(ValidationError, match="Unknown tools: teleport"):
            await service.create_agent(AgentCreate(name="other", tool_names=["teleport"]))
        with pytest.raises(ValidationError, match="Unknown model"):
            await service.create_agent(AgentCreate(name="other", model="gpt-nope"))
        with pytest.raises(AgentNotFoundError):
            await service.get_agent("nobody")

    async def test_taken_tool_log_name_leaves_no_tables_behind(self, db, service):
        tables = TableService(db)
        await tables.create(TableCreate(
            name="scout_tools",
            columns=[ColumnDefinition(id="note", name="note", type="text")],
        ))

        with pytest.raises(DuplicateTableError):
            await service.create_agent(AgentCreate(name="scout"))

        assert await tables.find("scout_memory") is None
        assert await service.list_agents() == []

    async def test_failed_creation_removes_created_tables(self, db, service, monkeypatch):
        tables = TableService(db)
        original_create = service.tables.create
        calls = []

        async def create_then_fail(data):
            calls.append(data.name)
            if len(calls) == 2:
                raise RuntimeError("disk full")
            return await original_create(data)

        monkeypatch.setattr(service.tables, "create", create_then_fail)
        with pytest.raises(RuntimeError, match="disk full"):
            await service.create_agent(AgentCreate(name="scout"))

        assert calls == ["scout_memory", "scout_tools"]
        assert await tables.find("scout_memory") is None
        assert await service.list_agents() == []

    async def test_delete_agent_drops_tables(self, db, service, helper):
        memory_id, tools_id = helper.memory_table_id, helper.tool_log_table_id
        await service.delete_agent("helper")

        with pytest.raises(AgentNotFoundError):
            await service.get_agent("helper")
        for table_id in (memory_id, tools_id):
            with pytest.raises(TableNotFoundError):
                await TableService(db).get(table_id)

    async def test_agent_tables_cannot_be_deleted_directly(self, db, helper):
        with pytest.raises(ConflictError, match="belongs to agent 'helper'"):
            await TableService(db).delete(helper.memory_table_id)


# ═══════════════════════════════════════════════════════════════════════════
# Chat
# ═══════════════════════════════════════════════════════════════════════════


class TestChat:
    """Conversation turns and what they write to memory and the tool log."""

    async def test_chat_stores_turn(self, db, service, helper, fake_llm):
        fake_llm.script(
            tool_response("compute_value", {"formula": "6 * 7"}, text="Computing."),
            text_response("It is 42."),
        )

        response = await service.chat("helper", "What is 6 times 7?")

        assert response.text == "Computing.\n\nIt is 42."
        assert response.outcome == "complete"
        assert response.tool_calls[0].tool_name == "compute_value"
        assert response.tool_calls[0].output == "42"
        assert response.usage.input_tokens == 20
        assert response.trace_id

        call = fake_llm.calls[0]
        assert call["system"] == "You help with tables."
        assert call["messages"] == [{"role": "user", "content": "What is 6 times 7?"}]
        assert {t["name"] for t in call["tools"]} == {"list_tables", "compute_value"}

        history = await service.history("helper")
        assert [(m.role, m.content) for m in history] == [
            ("user", "What is 6 times 7?"),
            ("assistant", "Computing.\n\nIt is 42."),
        ]

        log, total = await RowService(db).list(helper.tool_log_table_id)
        assert total == 1
        assert log[0].data["tool_name"] == "compute_value"
        assert log[0].data["tool_input"] == {"formula": "6 * 7"}
        assert log[0].data["output"] == "42"

    async def test_tool_data_is_returned(self, service, helper, fake_llm):
        fake_llm.script(tool_response("list_tables", {}), text_response("Two tables."))

        response = await service.chat("helper", "What tables are there?")

        data = response.tool_calls[0].data
        assert {t["name"] for t in data} == {"helper_memory", "helper_tools"}
        assert not response.tool_calls[0].is_error

    async def test_agent_without_tool_names_gets_global_tools(self, service, fake_llm):
        await service.create_agent(AgentCreate(name="generalist"))
        fake_llm.script(text_response("Hello."))

        await service.chat("generalist", "hi")

        offered = {t["name"] for t in fake_llm.calls[0]["tools"]}
        assert offered == {t.name for t in get_global_tools()}
        assert "add_computed_column" not in offered

    async def test_row_cap_does_not_block_memory(self, db, service, helper, fake_llm, monkeypatch):
        monkeypatch.setattr(settings, "MAX_ROWS_PER_TABLE", 4)
        fake_llm.script(
            text_response("one"),
            tool_response("compute_value", {"formula": "1 + 1"}),
            text_response("two"),
            text_response("three"),
        )

        for message in ("a", "b", "c"):
            await service.chat("helper", message)

        assert len(await service.history("helper")) == 6

        notes = await TableService(db).create(TableCreate(
            name="notes",
            columns=[ColumnDefinition(id="note", name="note", type="text")],
        ))
        with pytest.raises(RowLimitError):
            await RowService(db).create_many(notes, [{"note": str(i)} for i in range(5)])

    async def test_history_is_sent_on_next_turn(self, service, helper, fake_llm):
        fake_llm.script(text_response("Hi Ada."), text_response("Your name is Ada."))
        await service.chat("helper", "My name is Ada.")
        await service.chat("helper", "What is my name?")

        assert fake_llm.calls[1]["messages"] == [
            {"role": "user", "content": "My name is Ada."},
            {"role": "assistant", "content": "Hi Ada."},
            {"role": "user", "content": "What is my name?"},
        ]
        assert len(await service.history("helper", limit=1)) == 1

    async def test_failed_turn_keeps_user_message(self, service, helper, fake_llm):
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        fake_llm.script(anthropic.APIConnectionError(request=request))
        with pytest.raises(AgentRunError, match="Could not connect to the model API"):
            await service.chat("helper", "Hello?")

        fake_llm.script(text_response("Sorry, I'm back."))
        await service.chat("helper", "Anyone there?")

        assert fake_llm.calls[1]["messages"] == [{"role": "user", "content": "Hello?\n\nAnyone there?"}]
        history = await service.history("helper")
        assert [m.role for m in history] == ["user", "user", "assistant"]

    async def test_empty_message_is_rejected(self, service, helper):
        with pytest.raises(ValidationError):
            await service.chat("helper", "   ")

    async def test_clear_memory(self, service, helper, fake_llm):
        fake_llm.script(text_response("one"), text_response("two"))
        await service.chat("helper", "a")
        await service.chat("helper", "b")

        assert await service.clear_memory("helper") == 4
        assert await service.history("helper") == []


# ═══════════════════════════════════════════════════════════════════════════
# Streaming
# ═══════════════════════════════════════════════════════════════════════════


class TestStreamChat:

    async def test_stream_chat_events(self, service, helper, fake_llm):
        fake_llm.script(
            tool_response("compute_value", {"formula": "1 + 1"}, text="Adding."),
            text_response("Two."),
        )

        events = await service.stream_chat("helper", "1 + 1?")
        frames = [json.loads(e) async for e in events]

        types = [f["type"] for f in frames]
        assert types[0] == "status"
        assert "tool_start" in types and "tool_complete" in types
        assert types[-1] == "complete"
        assert "".join(f["text"] for f in frames if f["type"] == "text_delta") == "Adding.\n\nTwo."
        tool_complete = next(f for f in frames if f["type"] == "tool_complete")
        assert (tool_complete["tool"], tool_complete["output"]) == ("compute_value", "2")
        assert frames[-1]["payload"]["text"] == "Adding.\n\nTwo."

        history = await service.history("helper")
        assert [m.role for m in history] == ["user", "assistant"]

    async def test_stream_chat_unknown_agent_raises_before_streaming(self, service):
        with pytest.raises(AgentNotFoundError):
            await service.stream_chat("ghost", "hello")


class TestBuildHistory:

    def test_build_history_shapes_turns(self):
        def row(role, content):
            return SimpleNamespace(data={"role": role, "content": content})

        rows = [
            row("assistant", "orphan"),
            row("user", "a"),
            row("user", "b"),
            row("assistant", "c"),
            row("assistant", ""),
            row("assistant", "d"),
        ]
        assert build_history(rows) == [
            {"role": "user", "content": "a\n\nb"},
            {"role": "assistant", "content": "c\n\nd"},
        ]
