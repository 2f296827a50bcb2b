"""
CRM MCP Gateway - HTTP transport
================================
Streamable HTTP on a single path: POST carries JSON-RPC messages, GET opens
the session's SSE stream, DELETE ends the session. Sessions are identified
by the ``Mcp-Session-Id`` header.
"""

import hmac
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, List, Optional
from urllib.parse import urlparse

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse, Response

from . import SERVER_NAME, __version__
from .backends import BackendAdapter, build_adapters
from .config import GatewayConfig
from .errors import INVALID_REQUEST, PARSE_ERROR, InternalError, ProtocolError
from .models import rpc_error, rpc_result
from .registry import CapabilityRegistry
from .rest import RestError, rest_error_handler
from .rest import router as rest_router
from .router import DispatchRouter
from .sessions import Session, SessionManager
from .transport import ResponseWriter, SessionTransport, initialize_result

logger = logging.getLogger(__name__)

SESSION_HEADER = "Mcp-Session-Id"
GATEWAY_METHODS = ["GET", "POST", "DELETE", "PUT", "PATCH"]
ALLOWED_METHODS = "GET, POST, DELETE"


def origin_host(origin: str) -> Optional[str]:
    try:
        host = urlparse(origin).hostname
    except ValueError:
        return None
    return host.lower() if host else None


class ProtocolGateway:
    """Validates, routes and answers requests on the MCP path."""

    def __init__(
        self,
        config: GatewayConfig,
        registry: CapabilityRegistry,
        router: DispatchRouter,
        sessions: Optional[SessionManager] = None,
    ):
        self.config = config
        self.registry = registry
        self.router = router
        self.sessions = sessions or SessionManager()
        self.allowed_hosts = [h.lower().lstrip(".") for h in config.MCP_ALLOWED_ORIGINS]

    # ------------------------------------------------------------------
    # Request checks
    # ------------------------------------------------------------------

    def origin_allowed(self, origin: Optional[str]) -> bool:
        """Absent Origin is same-origin; otherwise exact host or dot-suffix match."""
        if not origin:
            return True
        host = origin_host(origin)
        if host is None:
            return False
        return any(host == allowed or host.endswith(f".{allowed}") for allowed in self.allowed_hosts)

    def _check_origin(self, request: Request) -> None:
        origin = request.headers.get("origin")
        if not self.origin_allowed(origin):
            logger.warning(f"Rejected request from origin {origin}")
            raise ProtocolError(f"Forbidden: origin {origin} is not allowed", 403)

    def check_secret(self, request: Request, allow_query: bool = False) -> None:
        if not self.config.MCP_API_KEY:
            return
        provided = request.headers.get("x-api-key", "")
        if not provided and allow_query:
            provided = request.query_params.get("api_key", "")
        authorization = request.headers.get("authorization", "")
        if not provided and authorization.lower().startswith("bearer "):
            provided = authorization[7:].strip()
        if not hmac.compare_digest(provided.encode(), self.config.MCP_API_KEY.encode()):
            logger.warning("Rejected request with missing or invalid API key")
            raise ProtocolError("Unauthorized", 401)

    def _log_accept(self, request: Request) -> None:
        accept = request.headers.get("accept", "")
        if "application/json" not in accept or "text/event-stream" not in accept:
            logger.warning(f"Non-conforming Accept header {accept!r}; continuing")

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _new_transport(self, session_id: str) -> SessionTransport:
        return SessionTransport(
            session_id,
            self.registry,
            self.router,
            on_initialized=self.sessions.activate,
            on_closed=self.sessions.remove,
        )

    def _open_session(self) -> Session:
        return self.sessions.create(self._new_transport)

    @staticmethod
    def _bind_session_header(writer: ResponseWriter, session_id: str) -> None:
        writer.set_header(SESSION_HEADER, session_id)
        writer.expose_header(SESSION_HEADER)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle(self, request: Request) -> Response:
        writer = ResponseWriter()
        try:
            self._check_origin(request)
            self._log_accept(request)
            self.check_secret(request)
            if request.method == "POST":
                await self._handle_post(request, writer)
            elif request.method == "GET":
                self._handle_get(request, writer)
            elif request.method == "DELETE":
                self._handle_delete(request, writer)
            else:
                writer.set_header("Allow", ALLOWED_METHODS)
                raise ProtocolError(f"Method {request.method} not allowed", 405)
        except ProtocolError as e:
            if writer.committed:
                logger.error(f"Protocol error after response was committed: {e}")
            else:
                writer.write_json(rpc_error(None, INVALID_REQUEST, str(e)), e.status_code)
        except Exception:
            if writer.committed:
                logger.exception("Error after response was committed")
            else:
                logger.exception("Internal error handling MCP request")
                error = InternalError("Internal server error")
                writer.write_json(rpc_error(None, error.code, error.message), 500)
        return writer.to_response()

    async def _handle_post(self, request: Request, writer: ResponseWriter) -> None:
        raw = await request.body()
        try:
            payload = json.loads(raw)
        except ValueError:
            writer.write_json(rpc_error(None, PARSE_ERROR, "Parse error"), 400)
            return
        if not isinstance(payload, (dict, list)):
            writer.write_json(rpc_error(None, INVALID_REQUEST, "Invalid Request"), 400)
            return

        logger.debug(f"MCP request body: {payload}")

        session_id = request.headers.get(SESSION_HEADER)
        session = self.sessions.get(session_id)
        method = payload.get("method") if isinstance(payload, dict) else None

        if method == "tools/list":
            if session is not None:
                self._bind_session_header(writer, session.id)
            writer.write_json(rpc_result(payload.get("id"), {"tools": self.registry.to_wire()}))
            return

        if session is not None:
            logger.info(f"Reusing session {session.id}")
            self._bind_session_header(writer, session.id)
            await session.transport.handle_request(payload, writer)
            return

        if session_id and method != "initialize":
            logger.warning(f"Unknown session {session_id}; starting a new session")
        session = self._open_session()
        self._bind_session_header(writer, session.id)
        try:
            await session.transport.handle_request(payload, writer)
            if method == "initialize" and not writer.committed:
                writer.write_json(rpc_result(payload.get("id"), initialize_result(payload.get("params") or {})))
                self.sessions.activate(session.id)
        finally:
            # Only a request that completes the handshake keeps its session.
            self.sessions.discard_pending(session.id)

    def _require_session_id(self, request: Request) -> str:
        session_id = request.headers.get(SESSION_HEADER)
        if not session_id:
            raise ProtocolError("Bad Request: missing Mcp-Session-Id header", 400)
        return session_id

    def _handle_get(self, request: Request, writer: ResponseWriter) -> None:
        session_id = self._require_session_id(request)
        session = self.sessions.get(session_id)
        if session is None:
            raise ProtocolError(f"Bad Request: no valid session for ID {session_id}", 400)
        stream = session.transport.open_stream()
        self._bind_session_header(writer, session.id)
        writer.write_stream(stream)

    def _handle_delete(self, request: Request, writer: ResponseWriter) -> None:
        session_id = self._require_session_id(request)
        session = self.sessions.get(session_id)
        if session is None:
            raise ProtocolError(f"Session {session_id} not found", 404)
        session.transport.close()
        writer.write_empty(200)


def create_app(
    config: Optional[GatewayConfig] = None,
    adapters: Optional[List[BackendAdapter]] = None,
) -> FastAPI:
    """Build the FastAPI application serving the gateway path and info routes."""
    config = config or GatewayConfig()
    if adapters is None:
        adapters = build_adapters(config, config.MCP_SERVER_TYPE)

    registry = CapabilityRegistry(adapters)
    router = DispatchRouter(registry)
    gateway = ProtocolGateway(config, registry, router)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"{SERVER_NAME} v{__version__} serving {len(registry)} tools at {config.MCP_PATH}")
        yield
        closed = gateway.sessions.close_all()
        logger.info(f"Shutdown: closed {closed} session(s)")
        for adapter in adapters:
            await adapter.aclose()

    app = FastAPI(title="CRM MCP Gateway", version=__version__, lifespan=lifespan)
    app.state.gateway = gateway
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[SESSION_HEADER],
    )
    app.add_exception_handler(RestError, rest_error_handler)
    app.include_router(rest_router)

    @app.get("/health")
    async def health() -> Any:
        return JSONResponse({
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "services": config.configured_backends(),
            "activeSessions": len(gateway.sessions),
            "tools": len(registry),
        })

    @app.get("/")
    async def root() -> Any:
        return JSONResponse({
            "name": SERVER_NAME,
            "version": __version__,
            "endpoint": config.MCP_PATH,
            "transport": "streamable-http",
            "tools": len(registry),
            "usage": f"POST JSON-RPC to {config.MCP_PATH}; GET {config.MCP_PATH} with {SESSION_HEADER} opens the SSE stream",
            "documentation": "/api/docs",
        })

    @app.api_route(config.MCP_PATH, methods=GATEWAY_METHODS)
    async def mcp_endpoint(request: Request) -> Response:
        return await gateway.handle(request)

    return app
