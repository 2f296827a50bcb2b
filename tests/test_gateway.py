"""
Tests for the HTTP gateway

POST paths go through TestClient. The SSE GET path is driven by calling the
gateway handler directly, since TestClient would buffer the endless stream.
"""

import json
import logging

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from conftest import INIT_BODY
from crm_gateway.config import GatewayConfig
from crm_gateway.errors import INTERNAL_ERROR, INVALID_REQUEST, METHOD_NOT_FOUND, PARSE_ERROR
from crm_gateway.gateway import create_app

NEW_RECORD = {"name": "A", "email": "a@x.com", "issue": "i", "status": "open", "priority": "low"}


def rpc(method, params=None, request_id=1):
    body = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        body["params"] = params
    return body


def tool_call(name, arguments, request_id=1):
    return rpc("tools/call", {"name": name, "arguments": arguments}, request_id)


def tool_data(response):
    """Decode the JSON text block of a successful tools/call response."""
    payload = response.json() if hasattr(response, "json") else response
    return json.loads(payload["result"]["content"][0]["text"])


def asgi_request(method, headers=None, body=b""):
    async def receive():
        return {"type": "http.request", "body": body, "more_body": False}

    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": "/mcp",
        "raw_path": b"/mcp",
        "query_string": b"",
        "root_path": "",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": ("testclient", 50000),
        "server": ("testserver", 80),
    }
    return Request(scope, receive)


class TestInitialize:
    def test_initialize_assigns_session_header(self, client):
        """Should return a non-empty Mcp-Session-Id on initialize without a session"""
        response = client.post("/mcp", json=INIT_BODY)

        assert response.status_code == 200
        assert response.headers["mcp-session-id"]
        assert "Mcp-Session-Id" in response.headers["access-control-expose-headers"]
        result = response.json()["result"]
        assert result["protocolVersion"] == "2025-03-26"
        assert result["serverInfo"] == {"name": "crm-mcp-server", "version": "1.0.0"}

    def test_each_initialize_gets_a_new_session(self, client):
        first = client.post("/mcp", json=INIT_BODY).headers["mcp-session-id"]
        second = client.post("/mcp", json=INIT_BODY).headers["mcp-session-id"]
        assert first != second

    def test_session_is_activated(self, client, app, session_id):
        session = app.state.gateway.sessions.get(session_id)
        assert session.status.value == "active"

    def test_initialized_notification(self, client, session_id):
        response = client.post(
            "/mcp",
            json={"jsonrpc": "2.0", "method": "notifications/initialized"},
            headers={"Mcp-Session-Id": session_id},
        )
        assert response.status_code == 202
        assert response.headers["mcp-session-id"] == session_id


class TestToolsList:
    def test_reuses_session(self, client, app, session_id):
        """Should answer from the registry and echo the session without creating another"""
        response = client.post("/mcp", json=rpc("tools/list", request_id=2), headers={"Mcp-Session-Id": session_id})

        assert response.status_code == 200
        assert response.headers["mcp-session-id"] == session_id
        assert response.json()["id"] == 2
        names = [t["name"] for t in response.json()["result"]["tools"]]
        assert names == app.state.gateway.registry.names()
        assert len(app.state.gateway.sessions) == 1

    def test_before_initialize(self, client, app):
        """Should return the full catalog without a session and without side effects"""
        first = client.post("/mcp", json=rpc("tools/list"))
        second = client.post("/mcp", json=rpc("tools/list"))

        assert first.status_code == 200
        assert "mcp-session-id" not in first.headers
        assert first.json()["result"] == second.json()["result"]
        assert len(first.json()["result"]["tools"]) == len(app.state.gateway.registry)
        assert len(app.state.gateway.sessions) == 0


class TestToolsCall:
    def test_unknown_tool_is_an_envelope_error(self, client, session_id):
        """Should answer 200 with an error naming the unknown tool"""
        response = client.post("/mcp", json=tool_call("frobnicate", {}), headers={"Mcp-Session-Id": session_id})

        assert response.status_code == 200
        error = response.json()["error"]
        assert error["code"] == METHOD_NOT_FOUND
        assert "frobnicate" in error["message"]

    def test_unknown_tool_without_session(self, client):
        response = client.post("/mcp", json=tool_call("frobnicate", {}))
        assert response.status_code == 200
        assert "frobnicate" in response.json()["error"]["message"]

    def test_validation_error(self, client, session_id):
        response = client.post("/mcp", json=tool_call("echo", {}), headers={"Mcp-Session-Id": session_id})
        assert response.status_code == 200
        assert response.json()["error"]["code"] == -32602

    def test_upstream_error(self, client, session_id):
        response = client.post("/mcp", json=tool_call("fail_upstream", {}), headers={"Mcp-Session-Id": session_id})
        assert response.status_code == 200
        assert response.json()["error"]["message"] == "Echo API error: 502 bad gateway"

    def test_unknown_session_starts_a_new_one(self, client, app):
        response = client.post(
            "/mcp",
            json=tool_call("echo", {"message": "hi"}),
            headers={"Mcp-Session-Id": "stale-session"},
        )

        assert response.status_code == 200
        assert response.headers["mcp-session-id"] != "stale-session"
        assert response.json()["result"]["content"][0]["text"] == "hi"
        assert "stale-session" not in app.state.gateway.sessions
        assert len(app.state.gateway.sessions) == 0

    def test_session_less_calls_leave_no_sessions(self, client, app):
        """Should not keep a session for requests that never complete the handshake"""
        for request_id in range(50):
            response = client.post("/mcp", json=tool_call("echo", {"message": "hi"}, request_id))
            assert response.json()["result"]["content"][0]["text"] == "hi"

        assert len(app.state.gateway.sessions) == 0
        assert client.get("/health").json()["activeSessions"] == 0

    def test_batch_with_initialize_keeps_its_session(self, client, app):
        response = client.post("/mcp", json=[INIT_BODY, tool_call("echo", {"message": "b"}, request_id=2)])

        session = app.state.gateway.sessions.get(response.headers["mcp-session-id"])
        assert session.status.value == "active"
        assert [reply["id"] for reply in response.json()] == [1, 2]

    def test_unknown_method_in_session(self, client, session_id):
        response = client.post("/mcp", json=rpc("resources/list"), headers={"Mcp-Session-Id": session_id})
        assert response.status_code == 200
        assert response.json()["error"]["code"] == METHOD_NOT_FOUND

    def test_record_round_trip(self, client, session_id):
        """Should read back exactly the submitted fields plus id and timestamps"""
        headers = {"Mcp-Session-Id": session_id}
        created = tool_data(client.post("/mcp", json=tool_call("add_customer_record", NEW_RECORD), headers=headers))
        record_id = created["record"]["id"]

        fetched = tool_data(client.post("/mcp", json=tool_call("get_customer_record", {"id": record_id}), headers=headers))

        for key, value in NEW_RECORD.items():
            assert fetched[key] == value
        assert fetched["id"] == record_id
        assert fetched["createdAt"] == fetched["updatedAt"]

    def test_update_then_get(self, client, session_id):
        headers = {"Mcp-Session-Id": session_id}
        created = tool_data(client.post("/mcp", json=tool_call("add_customer_record", NEW_RECORD), headers=headers))
        record_id = created["record"]["id"]

        client.post(
            "/mcp",
            json=tool_call("update_customer_record", {"id": record_id, "status": "resolved"}),
            headers=headers,
        )
        fetched = tool_data(client.post("/mcp", json=tool_call("get_customer_record", {"id": record_id}), headers=headers))

        assert fetched["status"] == "resolved"
        assert fetched["name"] == "A"
        assert fetched["email"] == "a@x.com"
        assert fetched["priority"] == "low"
        assert fetched["updatedAt"] > fetched["createdAt"]

    def test_prefixed_tool_name(self, client, session_id):
        response = client.post(
            "/mcp",
            json=tool_call("sheets_list_all_customers", {}),
            headers={"Mcp-Session-Id": session_id},
        )
        assert tool_data(response) == {"total": 0, "records": []}

    def test_batch(self, client, session_id):
        response = client.post(
            "/mcp",
            json=[rpc("ping", request_id=1), tool_call("echo", {"message": "b"}, request_id=2)],
            headers={"Mcp-Session-Id": session_id},
        )
        assert [reply["id"] for reply in response.json()] == [1, 2]


class TestMalformedRequests:
    def test_parse_error(self, client):
        response = client.post("/mcp", content=b"{not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == PARSE_ERROR

    def test_empty_body(self, client):
        response = client.post("/mcp", content=b"")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == PARSE_ERROR

    def test_non_object_body(self, client):
        response = client.post("/mcp", json="hello")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == INVALID_REQUEST

    def test_non_conforming_accept_is_allowed(self, client):
        response = client.post("/mcp", json=INIT_BODY, headers={"Accept": "text/html"})
        assert response.status_code == 200

    def test_non_conforming_accept_is_logged_for_every_method(self, client, caplog):
        with caplog.at_level(logging.WARNING, logger="crm_gateway.gateway"):
            response = client.get("/mcp", headers={"Accept": "text/html"})

        assert response.status_code == 400
        assert "Non-conforming Accept header 'text/html'" in caplog.text

    def test_conforming_accept_is_not_logged(self, client, caplog):
        with caplog.at_level(logging.WARNING, logger="crm_gateway.gateway"):
            client.delete("/mcp", headers={"Accept": "application/json, text/event-stream", "Mcp-Session-Id": "x"})

        assert "Accept" not in caplog.text

    def test_other_methods_not_allowed(self, client):
        response = client.put("/mcp", json=INIT_BODY)
        assert response.status_code == 405
        assert response.headers["allow"] == "GET, POST, DELETE"

    def test_internal_error_before_commit(self, client, app, monkeypatch):
        """Should answer 500 with a generic envelope when handling crashes"""
        def boom():
            raise RuntimeError("registry exploded")

        monkeypatch.setattr(app.state.gateway.registry, "to_wire", boom)
        response = client.post("/mcp", json=rpc("tools/list"))

        assert response.status_code == 500
        assert response.json()["error"] == {"code": INTERNAL_ERROR, "message": "Internal server error"}


class TestOrigin:
    @pytest.mark.parametrize("method", ["GET", "POST", "DELETE", "PUT"])
    def test_disallowed_origin_forbidden(self, client, method):
        """Should reject a foreign origin regardless of method or body"""
        response = client.request(method, "/mcp", content=b"garbage", headers={"Origin": "https://evil.example"})
        assert response.status_code == 403

    @pytest.mark.parametrize("origin", [
        "http://localhost:3000",
        "https://chat.openai.com",
        "https://abc123.ngrok-free.app",
    ])
    def test_allowed_origins(self, client, origin):
        response = client.post("/mcp", json=rpc("tools/list"), headers={"Origin": origin})
        assert response.status_code == 200

    def test_suffix_must_be_a_domain_boundary(self, client):
        response = client.post("/mcp", json=rpc("tools/list"), headers={"Origin": "https://evilngrok-free.app"})
        assert response.status_code == 403

    def test_null_origin(self, client):
        response = client.post("/mcp", json=rpc("tools/list"), headers={"Origin": "null"})
        assert response.status_code == 403

    def test_cors_preflight(self, client):
        response = client.options(
            "/mcp",
            headers={"Origin": "http://localhost:3000", "Access-Control-Request-Method": "POST"},
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"]


class TestApiKey:
    @pytest.fixture
    def secured(self, sheets_adapter, echo_adapter):
        app = create_app(GatewayConfig(environ={"MCP_API_KEY": "s3cret"}), adapters=[sheets_adapter, echo_adapter])
        with TestClient(app) as test_client:
            yield test_client

    def test_missing_key(self, secured):
        assert secured.post("/mcp", json=rpc("tools/list")).status_code == 401

    def test_x_api_key(self, secured):
        response = secured.post("/mcp", json=rpc("tools/list"), headers={"X-API-Key": "s3cret"})
        assert response.status_code == 200

    def test_bearer(self, secured):
        response = secured.post("/mcp", json=rpc("tools/list"), headers={"Authorization": "Bearer s3cret"})
        assert response.status_code == 200

    def test_wrong_key(self, secured):
        response = secured.post("/mcp", json=rpc("tools/list"), headers={"X-API-Key": "nope"})
        assert response.status_code == 401

    def test_health_is_open(self, secured):
        assert secured.get("/health").status_code == 200


class TestSessionEndpoints:
    def test_get_unknown_session(self, client, app):
        """Should answer 400 and create nothing"""
        response = client.get("/mcp", headers={"Mcp-Session-Id": "never-issued"})

        assert response.status_code == 400
        assert len(app.state.gateway.sessions) == 0

    def test_get_without_session_header(self, client):
        assert client.get("/mcp").status_code == 400

    def test_delete_closes_session(self, client, app, session_id):
        response = client.delete("/mcp", headers={"Mcp-Session-Id": session_id})

        assert response.status_code == 200
        assert session_id not in app.state.gateway.sessions
        assert client.delete("/mcp", headers={"Mcp-Session-Id": session_id}).status_code == 404
        assert client.get("/mcp", headers={"Mcp-Session-Id": session_id}).status_code == 400

    def test_shutdown_closes_sessions(self, app):
        with TestClient(app) as test_client:
            test_client.post("/mcp", json=INIT_BODY)
            test_client.post("/mcp", json=INIT_BODY)
            assert len(app.state.gateway.sessions) == 2
        assert len(app.state.gateway.sessions) == 0


class TestStreamScenario:
    async def test_initialize_call_then_stream(self, app):
        """initialize -> add_customer_record -> GET stream on the same session"""
        gateway = app.state.gateway

        init = await gateway.handle(asgi_request("POST", body=json.dumps(INIT_BODY).encode()))
        session_id = init.headers["mcp-session-id"]
        assert session_id

        call = await gateway.handle(asgi_request(
            "POST",
            headers={"Mcp-Session-Id": session_id},
            body=json.dumps(tool_call("add_customer_record", NEW_RECORD, request_id=2)).encode(),
        ))
        assert call.headers["mcp-session-id"] == session_id
        assert tool_data(json.loads(call.body))["record"]["id"]

        stream = await gateway.handle(asgi_request("GET", headers={"Mcp-Session-Id": session_id}))
        assert stream.status_code == 200
        assert stream.media_type == "text/event-stream"
        assert stream.headers["mcp-session-id"] == session_id
        first = await stream.body_iterator.__anext__()
        assert first.startswith(": stream opened")

        conflict = await gateway.handle(asgi_request("GET", headers={"Mcp-Session-Id": session_id}))
        assert conflict.status_code == 409

        await stream.body_iterator.aclose()
        assert session_id not in gateway.sessions

    async def test_log_notification_reaches_stream(self, app):
        gateway = app.state.gateway
        init = await gateway.handle(asgi_request("POST", body=json.dumps(INIT_BODY).encode()))
        session_id = init.headers["mcp-session-id"]
        stream = await gateway.handle(asgi_request("GET", headers={"Mcp-Session-Id": session_id}))
        await stream.body_iterator.__anext__()

        await gateway.handle(asgi_request(
            "POST",
            headers={"Mcp-Session-Id": session_id},
            body=json.dumps(tool_call("echo", {"message": "hi"})).encode(),
        ))
        event = await stream.body_iterator.__anext__()

        assert event.startswith("event: message")
        assert '"notifications/message"' in event
        await stream.body_iterator.aclose()


class TestInfoRoutes:
    def test_health(self, client, session_id):
        data = client.get("/health").json()

        assert data["status"] == "healthy"
        assert data["activeSessions"] == 1
        assert data["tools"] == 10
        assert data["services"] == {"googleSheets": False, "calendly": False, "sendgrid": False}

    def test_root(self, client):
        data = client.get("/").json()

        assert data["name"] == "crm-mcp-server"
        assert data["endpoint"] == "/mcp"
        assert data["transport"] == "streamable-http"

    def test_info_routes_skip_origin_check(self, client):
        assert client.get("/health", headers={"Origin": "https://evil.example"}).status_code == 200
