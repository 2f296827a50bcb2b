"""
Per-session protocol transport
==============================
``SessionTransport`` speaks MCP's JSON-RPC for one session: it answers
POSTed messages through a ``ResponseWriter`` and feeds an optional SSE
stream with server-initiated messages.

``ResponseWriter`` is the only way the gateway core writes an HTTP
response. Headers may be set until a body is written; after that the
response is committed.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from pydantic import ValidationError as MessageError
from starlette.responses import JSONResponse, Response, StreamingResponse

from . import SERVER_NAME, __version__
from .errors import INVALID_PARAMS, INVALID_REQUEST, METHOD_NOT_FOUND, ProtocolError
from .models import JSONRPC_VERSION, InvocationRequest, rpc_error, rpc_result
from .registry import CapabilityRegistry
from .router import DispatchRouter

logger = logging.getLogger(__name__)

SUPPORTED_PROTOCOL_VERSIONS = ("2024-11-05", "2025-03-26", "2025-06-18")
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[-1]
KEEPALIVE_INTERVAL = 15.0

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

_CLOSE = object()


class ResponseWriter:
    """Collects one HTTP response: headers first, then exactly one body."""

    def __init__(self):
        self.status_code = 200
        self.headers: Dict[str, str] = {}
        self.exposed_headers: List[str] = []
        self.committed = False
        self._body: Any = None
        self._kind: Optional[str] = None
        self._media_type: Optional[str] = None

    def set_header(self, name: str, value: str) -> None:
        if self.committed:
            raise RuntimeError(f"Cannot set header {name}: response already committed")
        self.headers[name] = value

    def expose_header(self, name: str) -> None:
        if self.committed:
            raise RuntimeError(f"Cannot expose header {name}: response already committed")
        if name not in self.exposed_headers:
            self.exposed_headers.append(name)

    def _commit(self, kind: str, body: Any, status_code: int, media_type: Optional[str] = None) -> None:
        if self.committed:
            raise RuntimeError("Response already committed")
        self._kind = kind
        self._body = body
        self._media_type = media_type
        self.status_code = status_code
        self.committed = True

    def write_json(self, payload: Any, status_code: int = 200) -> None:
        self._commit("json", payload, status_code)

    def write_empty(self, status_code: int = 202) -> None:
        self._commit("empty", None, status_code)

    def write_stream(self, chunks: AsyncIterator[str], media_type: str = "text/event-stream") -> None:
        for name, value in SSE_HEADERS.items():
            self.headers.setdefault(name, value)
        self._commit("stream", chunks, 200, media_type)

    @property
    def body(self) -> Any:
        return self._body

    def to_response(self) -> Response:
        headers = dict(self.headers)
        if self.exposed_headers:
            headers["Access-Control-Expose-Headers"] = ", ".join(self.exposed_headers)
        if self._kind == "json":
            return JSONResponse(self._body, status_code=self.status_code, headers=headers)
        if self._kind == "stream":
            return StreamingResponse(self._body, media_type=self._media_type, headers=headers)
        return Response(status_code=self.status_code if self.committed else 204, headers=headers)


def negotiate_protocol_version(requested: Any) -> str:
    if isinstance(requested, str) and requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return LATEST_PROTOCOL_VERSION


def initialize_result(params: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "protocolVersion": negotiate_protocol_version(params.get("protocolVersion")),
        "capabilities": {"tools": {"listChanged": False}, "logging": {}},
        "serverInfo": {"name": SERVER_NAME, "version": __version__},
    }


def log_notification(level: str, data: Any) -> Dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "method": "notifications/message",
        "params": {"level": level, "logger": SERVER_NAME, "data": data},
    }


class SessionTransport:
    """
    JSON-RPC handling for a single session.

    ``on_initialized`` fires once, when the initialize handshake completes.
    ``on_closed`` fires once, from ``close()``.
    """

    def __init__(
        self,
        session_id: str,
        registry: CapabilityRegistry,
        router: DispatchRouter,
        on_initialized: Optional[Callable[[str], Any]] = None,
        on_closed: Optional[Callable[[str], Any]] = None,
        keepalive_interval: float = KEEPALIVE_INTERVAL,
    ):
        self.session_id = session_id
        self.registry = registry
        self.router = router
        self.on_initialized = on_initialized
        self.on_closed = on_closed
        self.keepalive_interval = keepalive_interval
        self.initialized = False
        self.closed = False
        self._outbox: Optional[asyncio.Queue] = None

    @property
    def has_stream(self) -> bool:
        return self._outbox is not None

    async def handle_request(self, payload: Any, writer: ResponseWriter) -> None:
        """Handle one POST body, a single message or a batch, and write the reply."""
        if self.closed:
            raise ProtocolError(f"Session {self.session_id} is closed", 404)

        if isinstance(payload, list):
            if not payload:
                writer.write_json(rpc_error(None, INVALID_REQUEST, "Invalid Request: empty batch"), 400)
                return
            replies = []
            for message in payload:
                reply = await self.handle_message(message)
                if reply is not None:
                    replies.append(reply)
            if replies:
                writer.write_json(replies)
            else:
                writer.write_empty(202)
            return

        reply = await self.handle_message(payload)
        if reply is None:
            writer.write_empty(202)
        else:
            writer.write_json(reply)

    async def handle_message(self, message: Any) -> Optional[Dict[str, Any]]:
        """Process one JSON-RPC message. Notifications return None."""
        if not isinstance(message, dict):
            return rpc_error(None, INVALID_REQUEST, "Invalid Request")
        try:
            request = InvocationRequest.model_validate(message)
        except MessageError:
            request_id = message.get("id")
            if not isinstance(request_id, (str, int)):
                request_id = None
            return rpc_error(request_id, INVALID_REQUEST, "Invalid Request")

        logger.debug(f"[{self.session_id}] <- {request.method}")

        if request.is_notification:
            if request.method == "notifications/initialized":
                self._confirm()
            else:
                logger.debug(f"[{self.session_id}] notification {request.method} ignored")
            return None

        if request.method == "initialize":
            result = initialize_result(request.params)
            client = request.params.get("clientInfo")
            client_name = client.get("name") if isinstance(client, dict) else None
            logger.info(
                f"[{self.session_id}] initialize from {client_name or 'unknown client'}, "
                f"protocol {result['protocolVersion']}"
            )
            self._confirm()
            return rpc_result(request.id, result)
        if request.method == "ping":
            return rpc_result(request.id, {})
        if request.method == "tools/list":
            return rpc_result(request.id, {"tools": self.registry.to_wire()})
        if request.method == "tools/call":
            return await self._call_tool(request)
        return rpc_error(request.id, METHOD_NOT_FOUND, f"Method not found: {request.method}")

    async def _call_tool(self, request: InvocationRequest) -> Dict[str, Any]:
        name = request.params.get("name")
        if not isinstance(name, str) or not name:
            return rpc_error(request.id, INVALID_PARAMS, "Missing tool name")

        result = await self.router.dispatch(name, request.params.get("arguments"))

        if result.is_error:
            reply = rpc_error(request.id, result.error.code, result.error.message)
            self.send(log_notification("error", f"{name} failed: {result.error.message}"))
        else:
            reply = rpc_result(request.id, result.to_wire())
            self.send(log_notification("info", f"{name} completed"))
        return reply

    def _confirm(self) -> None:
        if self.initialized:
            return
        self.initialized = True
        if self.on_initialized is not None:
            self.on_initialized(self.session_id)

    def send(self, message: Dict[str, Any]) -> bool:
        """Queue a server-initiated message on the open stream, if any."""
        if self._outbox is None or self.closed:
            return False
        self._outbox.put_nowait(message)
        return True

    def open_stream(self) -> AsyncIterator[str]:
        """Attach the session's single SSE stream."""
        if self.closed:
            raise ProtocolError(f"Session {self.session_id} is closed", 404)
        if self._outbox is not None:
            raise ProtocolError(f"Session {self.session_id} already has an open stream", 409)
        self._outbox = asyncio.Queue()
        logger.info(f"SSE stream opened: {self.session_id}")
        return self._stream(self._outbox)

    async def _stream(self, outbox: asyncio.Queue) -> AsyncIterator[str]:
        try:
            yield f": stream opened for session {self.session_id}\n\n"
            while True:
                try:
                    message = await asyncio.wait_for(outbox.get(), timeout=self.keepalive_interval)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                if message is _CLOSE:
                    break
                yield sse_event(message)
        finally:
            self._outbox = None
            logger.info(f"SSE stream closed: {self.session_id}")
            self.close()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._outbox is not None:
            self._outbox.put_nowait(_CLOSE)
        if self.on_closed is not None:
            self.on_closed(self.session_id)


def sse_event(message: Dict[str, Any]) -> str:
    return f"event: message\ndata: {json.dumps(message)}\n\n"

