"""
CRM MCP Gateway - REST API
==========================
Plain JSON routes under ``/api`` over the same registry and router as the
MCP path, for callers that do not speak MCP. Every reply carries a
``success`` flag; failures carry ``error``.
"""

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from starlette.responses import JSONResponse

from . import __version__
from .backends.base import BackendAdapter
from .errors import ProtocolError

logger = logging.getLogger(__name__)

EXAMPLE_RECORD = {
    "name": "John Doe",
    "email": "john@example.com",
    "issue": "Login problem",
    "status": "open",
    "priority": "high",
}


class RestError(Exception):
    """Answered as ``{"success": false, "error": ...}`` with the given status."""

    def __init__(self, message: str, status_code: int = 400):
        self.status_code = status_code
        super().__init__(message)


async def rest_error_handler(request: Request, exc: RestError) -> JSONResponse:
    return JSONResponse({"success": False, "error": str(exc)}, status_code=exc.status_code)


def get_gateway(request: Request):
    return request.app.state.gateway


def require_api_key(request: Request) -> None:
    """Same shared secret as the MCP path; ``api_key`` query parameter also accepted."""
    try:
        get_gateway(request).check_secret(request, allow_query=True)
    except ProtocolError:
        raise RestError("Unauthorized: Invalid or missing API key", 401) from None


router = APIRouter(prefix="/api", tags=["rest"], dependencies=[Depends(require_api_key)])


def server_summary(adapter: BackendAdapter) -> Dict[str, Any]:
    return {
        "name": adapter.name,
        "displayName": adapter.title or adapter.name,
        "description": adapter.description,
    }


def server_tools(adapter: BackendAdapter):
    return [descriptor.to_wire() for descriptor in adapter.capabilities()]


def find_server(request: Request, server: str) -> BackendAdapter:
    adapter = get_gateway(request).registry.adapter(server)
    if adapter is None:
        raise RestError(f"Server '{server}' not found", 404)
    return adapter


async def read_json_object(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        raise RestError("Request body is not valid JSON") from None
    if not isinstance(body, dict):
        raise RestError("Request body must be a JSON object")
    return body


async def run_tool(request: Request, adapter: BackendAdapter, tool: str, arguments: Any) -> JSONResponse:
    result = await get_gateway(request).router.dispatch(f"{adapter.name}_{tool}", arguments)
    if result.is_error:
        return JSONResponse(
            {"success": False, "error": result.error.message, "code": result.error.code},
            status_code=400,
        )
    return JSONResponse({"success": True, **result.to_wire()})


@router.get("/servers")
async def list_servers(request: Request) -> Any:
    servers = [
        {**server_summary(adapter), "toolCount": len(adapter.capability_names())}
        for adapter in get_gateway(request).registry.adapters
    ]
    return JSONResponse({"success": True, "servers": servers})


@router.get("/servers/{server}/tools")
async def list_server_tools(server: str, request: Request) -> Any:
    adapter = find_server(request, server)
    return JSONResponse({"success": True, "server": server_summary(adapter), "tools": server_tools(adapter)})


@router.get("/tools")
async def list_all_tools(request: Request) -> Any:
    tools = {adapter.name: server_tools(adapter) for adapter in get_gateway(request).registry.adapters}
    return JSONResponse({"success": True, "tools": tools})


@router.post("/servers/{server}/tools/{tool}")
async def call_server_tool(server: str, tool: str, request: Request) -> Any:
    adapter = find_server(request, server)
    if not adapter.handles(tool):
        raise RestError(f"Tool '{tool}' not found on server '{server}'", 404)
    arguments = await read_json_object(request)
    logger.info(f"REST call {server}.{tool}")
    return await run_tool(request, adapter, tool, arguments)


@router.post("/call")
async def call_tool(request: Request) -> Any:
    body = await read_json_object(request)
    server, tool = body.get("server"), body.get("tool")
    if not isinstance(server, str) or not isinstance(tool, str) or not server or not tool:
        raise RestError("Missing required fields: server and tool")
    adapter = get_gateway(request).registry.adapter(server)
    if adapter is None:
        raise RestError(f"Server '{server}' not found or not configured")
    if not adapter.handles(tool):
        raise RestError(f"Unknown tool: {tool}")
    logger.info(f"REST call {server}.{tool}")
    return await run_tool(request, adapter, tool, body.get("arguments") or {})


@router.get("/docs")
async def api_docs(request: Request) -> Any:
    gateway = get_gateway(request)
    base_url = str(request.base_url).rstrip("/")
    if gateway.config.MCP_API_KEY:
        authentication = {
            "type": "API Key",
            "header": "x-api-key",
            "alternativeQueryParam": "api_key",
            "note": "Include your API key in the x-api-key header or api_key query parameter",
        }
    else:
        authentication = {
            "type": "None",
            "note": "No authentication configured. Set MCP_API_KEY to enable.",
        }
    return JSONResponse({
        "title": "CRM MCP REST API Documentation",
        "version": __version__,
        "baseUrl": base_url,
        "authentication": authentication,
        "endpoints": [
            {"path": "/health", "method": "GET", "description": "Health check endpoint", "authentication": False},
            {"path": "/api/servers", "method": "GET", "description": "List all available MCP servers", "authentication": True},
            {
                "path": "/api/servers/:server/tools",
                "method": "GET",
                "description": "List all tools for a specific server",
                "authentication": True,
                "parameters": [{"name": "server", "in": "path", "required": True}],
            },
            {"path": "/api/tools", "method": "GET", "description": "List all tools from all servers", "authentication": True},
            {
                "path": "/api/servers/:server/tools/:tool",
                "method": "POST",
                "description": "Execute a tool on a specific server",
                "authentication": True,
                "parameters": [
                    {"name": "server", "in": "path", "required": True},
                    {"name": "tool", "in": "path", "required": True},
                ],
                "requestBody": {"description": "Tool arguments as JSON object", "example": EXAMPLE_RECORD},
            },
            {
                "path": "/api/call",
                "method": "POST",
                "description": "Generic endpoint to call any tool",
                "authentication": True,
                "requestBody": {
                    "required": ["server", "tool"],
                    "example": {"server": "sheets", "tool": "add_customer_record", "arguments": EXAMPLE_RECORD},
                },
            },
        ],
        "servers": [
            {**server_summary(adapter), "tools": server_tools(adapter)}
            for adapter in gateway.registry.adapters
        ],
        "examples": [
            {
                "title": "List all servers",
                "request": "GET /api/servers",
                "curl": f'curl -H "x-api-key: YOUR_API_KEY" {base_url}/api/servers',
            },
            {
                "title": "Add customer record",
                "request": "POST /api/servers/sheets/tools/add_customer_record",
                "curl": (
                    f'curl -X POST -H "x-api-key: YOUR_API_KEY" -H "Content-Type: application/json" '
                    f"-d '{json.dumps(EXAMPLE_RECORD)}' {base_url}/api/servers/sheets/tools/add_customer_record"
                ),
            },
        ],
    })
