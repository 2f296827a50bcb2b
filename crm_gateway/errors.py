"""
Gateway exception classes

Invocation-level errors carry a JSON-RPC error code and travel back to the
caller inside the response envelope. ProtocolError is the only one that
becomes an HTTP status.
"""

from typing import Optional

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
UPSTREAM_ERROR = -32000


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    code = INTERNAL_ERROR

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(GatewayError):
    """Missing or malformed invocation arguments."""

    code = INVALID_PARAMS


class UnknownCapability(GatewayError):
    """Invocation name not recognised by any configured backend."""

    code = METHOD_NOT_FOUND

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown tool: {name}")


class UpstreamError(GatewayError):
    """Third-party API returned a failure status."""

    code = UPSTREAM_ERROR

    def __init__(self, service: str, status_code: Optional[int], body: str = ""):
        self.service = service
        self.status_code = status_code
        self.body = body
        if status_code is None:
            super().__init__(f"{service} request failed: {body}")
        else:
            super().__init__(f"{service} API error: {status_code} {body}".rstrip())


class InternalError(GatewayError):
    """Unexpected failure while handling a request."""

    code = INTERNAL_ERROR


class ProtocolError(Exception):
    """Malformed transport-level request, answered with an HTTP status."""

    def __init__(self, message: str, status_code: int = 400):
        self.status_code = status_code
        super().__init__(message)
