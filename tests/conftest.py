"""
Pytest configuration and shared fixtures.

Every test gets its own in-memory SQLite database. Model calls go to a
scripted FakeAnthropic client (tests/helpers.py), so nothing here touches
the network.
"""

import os

# Settings are read at import time
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("ANTHROPIC_API_KEY", "test-key")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.pool import StaticPool

from agentable.agents.llm_client import set_llm_client
from agentable.database import create_engine_for_url, create_session_factory, get_async_db, init_async_db
from agentable.schemas.table import ColumnDefinition, ComputedSpec, TableCreate
from helpers import FakeAnthropic


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


# ═══════════════════════════════════════════════════════════════════════════
# Fixtures
# ═══════════════════════════════════════════════════════════════════════════


@pytest.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = create_engine_for_url(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_async_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    """Provide an async DB session for a single test."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_llm():
    """Install a FakeAnthropic as the shared client. Script it with fake_llm.script(...)."""
    client = FakeAnthropic()
    set_llm_client(client)
    yield client
    set_llm_client(None)


@pytest.fixture
async def api_client(session_factory, fake_llm, tmp_path, monkeypatch):
    """AsyncClient bound to the app with the test database and export root."""
    from agentable.config.settings import settings
    from agentable.main import app

    monkeypatch.setattr(settings, "EXPORT_DIR", str(tmp_path / "exports"))

    async def _get_test_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_async_db] = _get_test_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


# ═══════════════════════════════════════════════════════════════════════════
# Sample schemas
# ═══════════════════════════════════════════════════════════════════════════


@pytest.fixture
def products_schema() -> TableCreate:
    """Products with two computed columns: total = price * qty, label = upper(name)."""
    return TableCreate(
        name="products",
        description="Products for tests",
        columns=[
            ColumnDefinition(id="col_name", name="Name", type="text", required=True),
            ColumnDefinition(id="col_price", name="Price", type="number"),
            ColumnDefinition(id="col_qty", name="Qty", type="number", default=1),
            ColumnDefinition(
                id="col_total",
                name="Total",
                type="number",
                computed=ComputedSpec(
                    function="formula",
                    inputs={"price": "col_price", "qty": "col_qty"},
                    params={"formula": "{price} * {qty}"},
                ),
            ),
            ColumnDefinition(
                id="col_label",
                name="Label",
                type="text",
                computed=ComputedSpec(function="upper", inputs={"value": "col_name"}),
            ),
        ],
    )
