"""
Shared fixtures: an in-memory Google Sheets service, a small echo backend
and a gateway app wired to both.
"""

import re
from typing import Any, Callable, Dict, List

import pytest
from fastapi.testclient import TestClient
from pydantic import Field

from crm_gateway.backends.base import BackendAdapter, ToolInput, capability
from crm_gateway.backends.sheets import SheetsAdapter
from crm_gateway.config import GatewayConfig
from crm_gateway.errors import UpstreamError
from crm_gateway.gateway import create_app
from crm_gateway.models import InvocationResult


class FakeRequest:
    """Stands in for a googleapiclient HttpRequest."""

    def __init__(self, run: Callable[[], Any]):
        self._run = run

    def execute(self):
        return self._run()


class FakeValues:
    def __init__(self, service: "FakeSheetsService"):
        self.service = service

    def get(self, spreadsheetId, range):
        self.service.calls.append(("values.get", range))
        return FakeRequest(lambda: {"range": range, "values": [list(row) for row in self.service.rows]})

    def append(self, spreadsheetId, range, valueInputOption, insertDataOption, body):
        self.service.calls.append(("values.append", range))

        def run():
            self.service.rows.extend(list(row) for row in body["values"])
            return {"updates": {"updatedRows": len(body["values"])}}

        return FakeRequest(run)

    def update(self, spreadsheetId, range, valueInputOption, body):
        self.service.calls.append(("values.update", range))
        row_number = int(re.search(r"!A(\d+):", range).group(1))

        def run():
            while len(self.service.rows) < row_number:
                self.service.rows.append([])
            self.service.rows[row_number - 1] = list(body["values"][0])
            return {"updatedRows": 1}

        return FakeRequest(run)


class FakeSpreadsheets:
    def __init__(self, service: "FakeSheetsService"):
        self.service = service

    def get(self, spreadsheetId, fields=None):
        self.service.calls.append(("get", fields))
        return FakeRequest(lambda: {"sheets": [{"properties": {"title": t}} for t in self.service.tabs]})

    def batchUpdate(self, spreadsheetId, body):
        self.service.calls.append(("batchUpdate", body))

        def run():
            for request in body["requests"]:
                self.service.tabs.append(request["addSheet"]["properties"]["title"])
            return {}

        return FakeRequest(run)

    def values(self):
        return FakeValues(self.service)


class FakeSheetsService:
    """In-memory spreadsheet: ``rows`` is the tab's grid, header row included."""

    def __init__(self, rows: List[List[str]] = None, tabs: List[str] = None):
        self.rows = rows if rows is not None else []
        self.tabs = tabs if tabs is not None else ["CustomerRecords"]
        self.calls: List[tuple] = []

    def spreadsheets(self):
        return FakeSpreadsheets(self)


class EchoInput(ToolInput):
    message: str = Field(..., description="Text to echo back")


class EchoAdapter(BackendAdapter):
    name = "echo"
    title = "Echo"
    description = "Test backend"

    @capability("echo", "Echo a message back", EchoInput)
    async def echo(self, params: EchoInput) -> InvocationResult:
        return InvocationResult.of_text(params.message)

    @capability("fail_upstream", "Always fails upstream")
    async def fail_upstream(self, params: ToolInput) -> InvocationResult:
        raise UpstreamError("Echo", 502, "bad gateway")

    @capability("explode", "Raises an unexpected error")
    async def explode(self, params: ToolInput) -> InvocationResult:
        raise RuntimeError("boom")


INIT_BODY: Dict[str, Any] = {
    "jsonrpc": "2.0",
    "id": 1,
    "method": "initialize",
    "params": {
        "protocolVersion": "2025-03-26",
        "capabilities": {},
        "clientInfo": {"name": "pytest", "version": "1.0"},
    },
}


@pytest.fixture
def sheet_service():
    return FakeSheetsService()


@pytest.fixture
def sheets_adapter(sheet_service):
    return SheetsAdapter(sheet_service, "spreadsheet-123")


@pytest.fixture
def echo_adapter():
    return EchoAdapter()


@pytest.fixture
def config():
    return GatewayConfig(environ={})


@pytest.fixture
def app(config, sheets_adapter, echo_adapter):
    return create_app(config, adapters=[sheets_adapter, echo_adapter])


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def session_id(client):
    """A session opened with a real initialize handshake."""
    response = client.post("/mcp", json=INIT_BODY)
    assert response.status_code == 200
    return response.headers["mcp-session-id"]
