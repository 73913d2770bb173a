"""
HTTP API through the FastAPI app, with the test database and a scripted model.
"""

import json

import anthropic
import httpx
import pytest

from helpers import text_response, tool_response


@pytest.fixture
def products_payload(products_schema):
    return products_schema.model_dump(mode="json")


@pytest.fixture
async def table_id(api_client, products_payload):
    response = await api_client.post("/api/tables", json=products_payload)
    assert response.status_code == 201
    return response.json()["id"]


class TestHealth:

    async def test_health(self, api_client):
        response = await api_client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.headers["X-Request-ID"]

    async def test_request_id_is_echoed(self, api_client):
        response = await api_client.get("/api/health", headers={"X-Request-ID": "abc123"})
        assert response.headers["X-Request-ID"] == "abc123"


# ═══════════════════════════════════════════════════════════════════════════
# Tables and rows
# ═══════════════════════════════════════════════════════════════════════════


class TestTablesAndRows:

    async def test_table_crud(self, api_client, products_payload, table_id):
        response = await api_client.get("/api/tables")
        assert [t["name"] for t in response.json()] == ["products"]
        assert response.json()[0]["computed_column_count"] == 2

        response = await api_client.post("/api/tables", json=products_payload)
        assert response.status_code == 409
        assert response.json() == {"detail": "Table 'products' already exists"}

        response = await api_client.put(f"/api/tables/{table_id}", json={"description": "stock"})
        assert response.json()["description"] == "stock"

        response = await api_client.delete(f"/api/tables/{table_id}")
        assert response.json() == {"ok": True}
        response = await api_client.get(f"/api/tables/{table_id}")
        assert response.status_code == 404
        assert response.json()["detail"] == f"Table {table_id} not found"

    async def test_invalid_schema_is_rejected(self, api_client):
        payload = {
            "name": "loop",
            "columns": [
                {"id": "a", "name": "A", "type": "text", "computed": {"function": "upper", "inputs": {"value": "b"}}},
                {"id": "b", "name": "B", "type": "text", "computed": {"function": "upper", "inputs": {"value": "a"}}},
            ],
        }
        response = await api_client.post("/api/tables", json=payload)
        assert response.status_code == 400
        assert "cycle" in response.json()["detail"]

        response = await api_client.post("/api/tables", json={"name": "bad", "columns": [{"id": "a", "type": "text"}]})
        assert response.status_code == 422

    async def test_rows_are_computed(self, api_client, table_id):
        response = await api_client.post(
            f"/api/tables/{table_id}/rows",
            json={"data": {"col_name": "widget", "col_price": 10, "col_qty": 2}},
        )
        assert response.status_code == 201
        row = response.json()
        assert row["data"]["col_total"] == 20
        assert row["data"]["col_label"] == "WIDGET"

        response = await api_client.put(
            f"/api/tables/{table_id}/rows/{row['id']}",
            json={"data": {"col_qty": 3}},
        )
        assert response.json()["data"]["col_total"] == 30

        response = await api_client.post(
            f"/api/tables/{table_id}/rows",
            json={"data": {"col_name": "x", "col_total": 1}},
        )
        assert response.status_code == 400

    async def test_list_filters_and_search(self, api_client, table_id):
        await api_client.post(
            f"/api/tables/{table_id}/rows/batch",
            json={"rows": [
                {"col_name": "alpha", "col_price": 5},
                {"col_name": "beta", "col_price": 15},
                {"col_name": "gamma", "col_price": 25},
            ]},
        )

        filters = json.dumps({"col_price": {"operator": "gte", "value": 15}})
        response = await api_client.get(
            f"/api/tables/{table_id}/rows",
            params={"filters": filters, "sort_column": "col_price", "sort_direction": "desc"},
        )
        body = response.json()
        assert body["total"] == 2
        assert [r["data"]["col_name"] for r in body["rows"]] == ["gamma", "beta"]

        response = await api_client.get(f"/api/tables/{table_id}/rows", params={"filters": "[1]"})
        assert response.status_code == 400

        response = await api_client.post(f"/api/tables/{table_id}/rows/search", json={"query": "ALPH"})
        assert [r["data"]["col_name"] for r in response.json()] == ["alpha"]

    async def test_bulk_delete(self, api_client, table_id):
        response = await api_client.post(
            f"/api/tables/{table_id}/rows/batch",
            json={"rows": [{"col_name": "a"}, {"col_name": "b"}]},
        )
        ids = [r["id"] for r in response.json()]

        response = await api_client.post(f"/api/tables/{table_id}/rows/bulk-delete", json={"row_ids": ids})
        assert response.json() == {"ok": True, "deleted": 2}

        response = await api_client.get(f"/api/tables/{table_id}/rows/{ids[0]}")
        assert response.status_code == 404


# ═══════════════════════════════════════════════════════════════════════════
# Columns
# ═══════════════════════════════════════════════════════════════════════════


class TestColumns:

    async def test_column_lifecycle(self, api_client, table_id):
        await api_client.post(f"/api/tables/{table_id}/rows", json={"data": {"col_name": "widget", "col_price": 2}})

        response = await api_client.post(
            f"/api/tables/{table_id}/columns",
            json={"column": {
                "id": "col_double",
                "name": "Double",
                "type": "number",
                "computed": {"function": "formula", "inputs": {"t": "col_total"}, "params": {"formula": "{t} * 2"}},
            }},
        )
        assert response.status_code == 201
        assert response.json()["columns"][-1]["id"] == "col_double"

        rows = (await api_client.get(f"/api/tables/{table_id}/rows")).json()["rows"]
        assert rows[0]["data"]["col_double"] == 4

        response = await api_client.delete(f"/api/tables/{table_id}/columns/Total")
        assert response.status_code == 409
        assert "col_double" in response.json()["detail"]

        response = await api_client.put(f"/api/tables/{table_id}/columns/Double", json={"name": "Twice"})
        assert response.json()["columns"][-1]["name"] == "Twice"

        response = await api_client.delete(f"/api/tables/{table_id}/columns/Twice")
        assert response.status_code == 200
        assert "col_double" not in [c["id"] for c in response.json()["columns"]]

    async def test_recompute_and_errors(self, api_client):
        payload = {
            "name": "ratios",
            "columns": [
                {"id": "a", "name": "a", "type": "number"},
                {"id": "b", "name": "b", "type": "number"},
                {"id": "r", "name": "ratio", "type": "number",
                 "computed": {"function": "formula", "inputs": {"x": "a", "y": "b"}, "params": {"formula": "{x} / {y}"}}},
            ],
        }
        table_id = (await api_client.post("/api/tables", json=payload)).json()["id"]

        response = await api_client.post(f"/api/tables/{table_id}/rows", json={"data": {"a": 1, "b": 0}})
        assert response.status_code == 422
        assert "Computed column r failed" in response.json()["detail"]

        response = await api_client.post(
            f"/api/tables/{table_id}/rows",
            json={"data": {"a": 1, "b": 0}, "on_error": "ignore"},
        )
        assert response.status_code == 201
        assert response.json()["errors"]["r"]["type"] == "FormulaError"

        response = await api_client.get(f"/api/tables/{table_id}/errors", params={"column": "ratio"})
        assert len(response.json()) == 1

        response = await api_client.post(f"/api/tables/{table_id}/recompute", json={})
        assert response.json() == {"rows": 1, "columns": ["r"], "errors": 1}


# ═══════════════════════════════════════════════════════════════════════════
# Import / export
# ═══════════════════════════════════════════════════════════════════════════


class TestImportExport:
    """CSV and JSON round trips plus dataset export."""

    async def test_csv_import_and_export(self, api_client, table_id):
        csv_text = "Name,Price,Qty\nwidget,10,2\ngadget,3,\n"
        response = await api_client.post(
            f"/api/tables/{table_id}/import",
            files={"file": ("products.csv", csv_text.encode("utf-8"), "text/csv")},
        )
        assert response.json() == {"ok": True, "imported": 2}

        response = await api_client.get(f"/api/tables/{table_id}/export", params={"format": "csv"})
        assert response.headers["content-disposition"] == 'attachment; filename="products.csv"'
        lines = response.text.strip().splitlines()
        assert lines[0] == "Name,Price,Qty,Total,Label"
        assert lines[1] == "widget,10,2,20.0,WIDGET"

        response = await api_client.get(f"/api/tables/{table_id}/export", params={"format": "json"})
        records = response.json()
        assert records[1]["Total"] == 3

    async def test_import_with_schema(self, api_client):
        csv_text = "city,population\nOslo,700000\nBergen,285000\n"
        response = await api_client.post(
            "/api/tables/import-with-schema",
            params={"table_name": "cities"},
            files={"file": ("cities.csv", csv_text.encode("utf-8"), "text/csv")},
        )
        assert response.status_code == 201
        body = response.json()
        assert [(c["name"], c["type"]) for c in body["columns"]] == [("city", "text"), ("population", "number")]
        assert body["row_count"] == 2

    async def test_dataset_export(self, api_client, tmp_path):
        image = tmp_path / "cat.jpg"
        image.write_bytes(b"img")
        payload = {
            "name": "pics",
            "columns": [
                {"id": "img", "name": "Image", "type": "image"},
                {"id": "label", "name": "Label", "type": "select", "options": ["cat", "dog"]},
            ],
        }
        table_id = (await api_client.post("/api/tables", json=payload)).json()["id"]
        await api_client.post(f"/api/tables/{table_id}/rows", json={"data": {"img": str(image), "label": "cat"}})

        response = await api_client.post(
            f"/api/tables/{table_id}/export/dataset",
            json={"format": "image_classification", "media_column": "Image", "label_column": "Label", "dest": "pics"},
        )
        assert response.status_code == 200
        assert response.json()["exported"] == 1
        labels = json.loads((tmp_path / "exports" / "pics" / "labels.json").read_text())
        assert labels["classes"] == ["cat", "dog"]

        response = await api_client.post(
            f"/api/tables/{table_id}/export/dataset",
            json={"format": "image_classification", "media_column": "Image", "dest": "pics"},
        )
        assert response.status_code == 400

        response = await api_client.post(
            f"/api/tables/{table_id}/export/dataset",
            json={"media_column": "Image", "dest": "../../escape"},
        )
        assert response.status_code == 400


# ═══════════════════════════════════════════════════════════════════════════
# Functions and tools
# ═══════════════════════════════════════════════════════════════════════════


class TestFunctionsAndTools:

    async def test_functions_listing(self, api_client):
        response = await api_client.get("/api/functions")
        names = [f["name"] for f in response.json()]
        assert names == sorted(names)
        assert {"upper", "formula", "concat"} <= set(names)

        response = await api_client.get("/api/functions/formula")
        assert response.json()["parameters"] == ["formula"]

        response = await api_client.get("/api/functions/nope")
        assert response.status_code == 404

    async def test_tools_listing_and_execute(self, api_client, table_id):
        response = await api_client.get("/api/tools", params={"category": "compute"})
        assert [t["name"] for t in response.json()] == ["compute_value"]

        response = await api_client.post(
            "/api/tools/insert_row/execute",
            json={"input": {"values": {"Name": "bolt", "Price": 1}}, "context": {"table_id": table_id}},
        )
        body = response.json()
        assert body["tool"] == "insert_row"
        assert body["output"].startswith("Inserted row #")
        assert not body["is_error"]
        assert body["data"] is None

        response = await api_client.post("/api/tools/list_tables/execute", json={})
        assert response.json()["data"] == [{"id": table_id, "name": "products", "rows": 1}]

        response = await api_client.post("/api/tools/teleport/execute", json={})
        assert response.status_code == 404


# ═══════════════════════════════════════════════════════════════════════════
# Agents
# ═══════════════════════════════════════════════════════════════════════════


@pytest.fixture
async def agent(api_client):
    response = await api_client.post(
        "/api/agents",
        json={"name": "clerk", "system_prompt": "You keep the books.", "tool_names": ["compute_value"]},
    )
    assert response.status_code == 201
    return response.json()


class TestAgents:
    """Agent definitions, chat and streaming over HTTP."""

    async def test_agent_crud(self, api_client, agent):
        assert agent["tool_names"] == ["compute_value"]

        response = await api_client.get("/api/tables")
        assert {t["name"] for t in response.json()} == {"clerk_memory", "clerk_tools"}

        response = await api_client.post("/api/agents", json={"name": "clerk"})
        assert response.status_code == 409

        response = await api_client.post("/api/agents", json={"name": "9lives"})
        assert response.status_code == 422

        response = await api_client.delete("/api/agents/clerk")
        assert response.json() == {"ok": True}
        assert (await api_client.get("/api/agents/clerk")).status_code == 404
        assert (await api_client.get("/api/tables")).json() == []

    async def test_agent_chat_and_memory(self, api_client, agent, fake_llm):
        fake_llm.script(
            tool_response("compute_value", {"formula": "12 * 12"}),
            text_response("That is 144."),
        )
        response = await api_client.post("/api/agents/clerk/chat", json={"message": "12 squared?"})
        assert response.status_code == 200
        body = response.json()
        assert body["text"] == "That is 144."
        assert body["tool_calls"] == [{
            "tool_name": "compute_value",
            "input": {"formula": "12 * 12"},
            "output": "144",
            "data": None,
            "is_error": False,
        }]

        history = (await api_client.get("/api/agents/clerk/history")).json()
        assert [(m["role"], m["content"]) for m in history] == [("user", "12 squared?"), ("assistant", "That is 144.")]

        response = await api_client.delete("/api/agents/clerk/memory")
        assert response.json() == {"ok": True, "deleted": 2}

    async def test_agent_chat_model_failure(self, api_client, agent, fake_llm):
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        fake_llm.script(anthropic.AuthenticationError(
            "invalid x-api-key", response=httpx.Response(401, request=request), body=None,
        ))
        response = await api_client.post("/api/agents/clerk/chat", json={"message": "hi"})
        assert response.status_code == 502
        assert response.json()["detail"] == "Model API rejected the API key; check ANTHROPIC_API_KEY."

    async def test_agent_chat_stream(self, api_client, agent, fake_llm):
        fake_llm.script(text_response("Streaming hello."))
        response = await api_client.post("/api/agents/clerk/chat/stream", json={"message": "hi"})
        assert response.status_code == 200

        events = [
            json.loads(line[len("data:"):].strip())
            for line in response.text.splitlines()
            if line.startswith("data:")
        ]
        assert events[0]["type"] == "status"
        assert [e["text"] for e in events if e["type"] == "text_delta"] == ["Streaming hello."]
        assert events[-1]["type"] == "complete"
        assert events[-1]["payload"]["text"] == "Streaming hello."

    async def test_agent_chat_stream_unknown_agent(self, api_client):
        response = await api_client.post("/api/agents/ghost/chat/stream", json={"message": "hi"})
        assert response.status_code == 404
