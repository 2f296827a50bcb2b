"""
CRM MCP Gateway - stdio transport
=================================
One implicit session over stdin/stdout for desktop MCP clients, served by
the MCP SDK's low-level server. Logging must stay on stderr.
"""

import logging
from typing import Any, Dict, List, Optional

import mcp.types as types
from mcp.server.lowlevel import Server
from mcp.server.stdio import stdio_server

from . import SERVER_NAME, __version__
from .errors import GatewayError
from .registry import CapabilityRegistry
from .router import DispatchRouter

logger = logging.getLogger(__name__)


def list_tools(registry: CapabilityRegistry) -> List[types.Tool]:
    return [
        types.Tool(name=d.name, description=d.description, inputSchema=d.input_schema)
        for d in registry.list()
    ]


async def call_tool(
    router: DispatchRouter,
    name: str,
    arguments: Optional[Dict[str, Any]] = None,
) -> List[types.TextContent]:
    """Dispatch a tool call; an error result is raised so the SDK reports isError."""
    result = await router.dispatch(name, arguments)
    if result.is_error:
        error = GatewayError(result.error.message)
        error.code = result.error.code
        raise error
    return [types.TextContent(type="text", text=block.text) for block in result.content]


def build_stdio_server(registry: CapabilityRegistry, router: DispatchRouter) -> Server:
    server = Server(SERVER_NAME, version=__version__)

    @server.list_tools()
    async def handle_list_tools() -> List[types.Tool]:
        return list_tools(registry)

    # Arguments are validated by the owning adapter.
    @server.call_tool(validate_input=False)
    async def handle_call_tool(name: str, arguments: Dict[str, Any]) -> List[types.TextContent]:
        return await call_tool(router, name, arguments)

    return server


async def run_stdio(registry: CapabilityRegistry, router: DispatchRouter) -> None:
    server = build_stdio_server(registry, router)
    logger.info(f"{SERVER_NAME} v{__version__} running on stdio with {len(registry)} tools")
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())
