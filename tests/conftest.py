import logging
import re
from typing import Any

import pytest
import pytest_asyncio
from _pytest.monkeypatch import MonkeyPatch
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

logger = logging.getLogger(__name__)


class FakeWarehouse:
    """
    In-memory stand-in for WarehouseConnectionManager.

    Organizations listed in `organizations` have data. Metric statements return the rows stored in
    `results` under a fragment of their SQL; distinct filter statements are answered from
    `dimension_rows`, honouring the selected projects.
    """

    def __init__(self):
        self.organizations: set[str] = {"acme"}
        self.results: dict[str, list[dict[str, Any]]] = {}
        self.dimension_rows: list[dict[str, str]] = []
        self.data_summary: dict[str, int] = {"projects_count": 0, "applications_count": 0, "environments_count": 0}
        self.error: Exception | None = None
        self.health: dict[str, Any] = {"status": "healthy", "details": {"connected": True, "table_count": 4}}
        self.statements: list[tuple[str, dict[str, Any]]] = []

    async def execute_query(self, sql: str, organization_name: str | None = None, params: dict | None = None):
        params = params or {}
        self.statements.append((sql, params))
        if self.error is not None:
            raise self.error
        if "LIMIT 1" in sql:
            return [{"found": 1}] if params.get("organization_name") in self.organizations else []
        if "COUNT(DISTINCT project_name)" in sql:
            return [self.data_summary]
        distinct = re.search(r"SELECT DISTINCT (\w+)", sql)
        if distinct:
            column = distinct.group(1)
            selected = [value for key, value in params.items() if key.startswith("project_name_")]
            return [
                {column: row[column]}
                for row in self.dimension_rows
                if not selected or row["project_name"] in selected
            ]
        for fragment, rows in self.results.items():
            if fragment in sql:
                return rows
        return []

    async def health_check(self):
        return self.health

    async def close(self):
        pass


@pytest.fixture(scope="session")
def session_monkeypatch():
    m_patch = MonkeyPatch()
    yield m_patch
    m_patch.undo()


@pytest.fixture(autouse=True, scope="session")
def setup_env(session_monkeypatch):
    """
    Setup test environment
    """
    logger.info("Setting up test environment")
    session_monkeypatch.setenv("SERVER_HOST", "http://localhost:8000")
    session_monkeypatch.setenv("DEBUG", "true")
    session_monkeypatch.setenv("ENV", "dev")
    session_monkeypatch.setenv("LOGGING_LEVEL", "info")
    session_monkeypatch.setenv("BACKEND_CORS_ORIGINS", '["http://localhost"]')
    session_monkeypatch.setenv("DATABRICKS_SERVER_HOSTNAME", "adb-123.azuredatabricks.net")
    session_monkeypatch.setenv("DATABRICKS_HTTP_PATH", "/sql/1.0/warehouses/abc")
    session_monkeypatch.setenv("DATABRICKS_TOKEN", "dapi-test-token")
    session_monkeypatch.setenv("DATABRICKS_CATALOG", "zephyr_catalog")
    session_monkeypatch.setenv("DATABRICKS_SCHEMA", "dora_gold")
    # high enough that the api tests never hit it
    session_monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "100000")
    yield


@pytest.fixture
def warehouse() -> FakeWarehouse:
    return FakeWarehouse()


@pytest.fixture
def app(setup_env, warehouse) -> FastAPI:
    # Import only after setting up the environment
    from dora_metrics.core.dependencies import get_connection_manager  # noqa
    from dora_metrics.main import app  # noqa

    app.dependency_overrides[get_connection_manager] = lambda: warehouse
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def async_client(app: FastAPI):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
