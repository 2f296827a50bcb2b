"""Tests for the stdio transport's tool handlers."""

import mcp.types as types
import pytest

from crm_gateway.errors import GatewayError, METHOD_NOT_FOUND
from crm_gateway.registry import CapabilityRegistry
from crm_gateway.router import DispatchRouter
from crm_gateway.stdio import build_stdio_server, call_tool, list_tools


@pytest.fixture
def registry(sheets_adapter, echo_adapter):
    return CapabilityRegistry([sheets_adapter, echo_adapter])


@pytest.fixture
def router(registry):
    return DispatchRouter(registry)


class TestStdioHandlers:
    def test_list_tools_matches_registry(self, registry):
        tools = list_tools(registry)

        assert [t.name for t in tools] == registry.names()
        assert tools[0].inputSchema == registry.list()[0].input_schema

    async def test_call_tool(self, router):
        content = await call_tool(router, "echo", {"message": "over stdio"})

        assert len(content) == 1
        assert content[0].type == "text"
        assert content[0].text == "over stdio"

    async def test_call_tool_error_is_raised(self, router):
        with pytest.raises(GatewayError) as exc:
            await call_tool(router, "unknown_tool", {})

        assert exc.value.code == METHOD_NOT_FOUND
        assert "unknown_tool" in str(exc.value)

    def test_build_server(self, registry, router):
        server = build_stdio_server(registry, router)
        assert server.name == "crm-mcp-server"

    async def test_registered_list_handler(self, registry, router):
        """Should answer tools/list through the SDK server's own request table"""
        server = build_stdio_server(registry, router)
        handler = server.request_handlers[types.ListToolsRequest]

        result = await handler(types.ListToolsRequest(method="tools/list"))

        assert [tool.name for tool in result.root.tools] == registry.names()

    async def test_registered_call_handler(self, registry, router):
        server = build_stdio_server(registry, router)
        handler = server.request_handlers[types.CallToolRequest]

        ok = await handler(types.CallToolRequest(
            method="tools/call",
            params=types.CallToolRequestParams(name="echo", arguments={"message": "hi"}),
        ))
        failed = await handler(types.CallToolRequest(
            method="tools/call",
            params=types.CallToolRequestParams(name="unknown_tool", arguments={}),
        ))

        assert not ok.root.isError
        assert ok.root.content[0].text == "hi"
        assert failed.root.isError
        assert "unknown_tool" in failed.root.content[0].text
