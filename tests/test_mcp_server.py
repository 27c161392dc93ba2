import asyncio
import json

import pytest
import pytest_asyncio
from aiohttp import test_utils

from forge_mcp.core.mcp_server import DEFAULT_CONFIG, StdioProtocol, StreamableHTTPProtocol

pytestmark = pytest.mark.asyncio


class TestStdioProtocol:

    @pytest.fixture
    def protocol(self, app):
        protocol = StdioProtocol(app, session_id="stdio-test")
        protocol.written = []

        async def capture(message):
            protocol.written.append(message)

        protocol._write = capture
        protocol.session.set_send(capture)
        return protocol

    async def test_request_line(self, protocol):
        await protocol._process(json.dumps({"jsonrpc": "2.0", "id": 1, "method": "tools/call",
                                            "params": {"name": "add", "arguments": {"a": 4, "b": 5}}}))
        assert protocol.written == [{"jsonrpc": "2.0", "id": 1, "result": {"content": [{"type": "text", "text": "9"}]}}]

    async def test_notification_line_writes_nothing(self, protocol):
        await protocol._process(json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}))
        assert protocol.written == []

    async def test_garbage_line(self, protocol):
        await protocol._process("not json at all")
        assert protocol.written[0]["error"]["code"] == -32700

    async def test_initialize_records_client_capabilities(self, protocol):
        await protocol._process(json.dumps({"jsonrpc": "2.0", "id": 1, "method": "initialize",
                                            "params": {"capabilities": {"sampling": {"tools": {}}}}}))
        assert protocol.session.supports_sampling_tools


@pytest_asyncio.fixture
async def http_client(app):
    protocol = StreamableHTTPProtocol(app, dict(DEFAULT_CONFIG))
    client = test_utils.TestClient(test_utils.TestServer(protocol.web_app))
    await client.start_server()
    yield client
    await client.close()


class TestStreamableHTTP:

    async def test_mcp_endpoint(self, http_client):
        response = await http_client.post("/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "ping"})
        assert response.status == 200
        assert response.headers["Mcp-Session-Id"]
        assert response.headers["Access-Control-Allow-Origin"] == "*"
        assert await response.json() == {"jsonrpc": "2.0", "id": 1, "result": {}}

    async def test_session_id_is_kept(self, http_client):
        response = await http_client.post("/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "ping"},
                                          headers={"Mcp-Session-Id": "abc"})
        assert response.headers["Mcp-Session-Id"] == "abc"

    async def test_notification_is_accepted(self, http_client):
        response = await http_client.post("/mcp", json={"jsonrpc": "2.0", "method": "notifications/initialized"})
        assert response.status == 202

    async def test_batch(self, http_client):
        response = await http_client.post("/mcp", json=[
            {"jsonrpc": "2.0", "id": 1, "method": "ping"},
            {"jsonrpc": "2.0", "method": "notifications/initialized"},
            {"jsonrpc": "2.0", "id": 2, "method": "tools/call", "params": {"name": "add", "arguments": {"a": 1, "b": 1}}},
        ])
        body = await response.json()
        assert [r["id"] for r in body] == [1, 2]

    async def test_invalid_json(self, http_client):
        response = await http_client.post("/mcp", data="{oops", headers={"Content-Type": "application/json"})
        assert response.status == 400
        assert (await response.json())["error"]["code"] == -32700

    async def test_raw_route(self, http_client):
        response = await http_client.post("/tools/call", json={"name": "add", "arguments": {"a": 2, "b": 2}})
        assert response.status == 200
        assert await response.json() == {"content": [{"type": "text", "text": "4"}]}

    async def test_raw_route_errors(self, http_client):
        missing = await http_client.post("/no/such/route", json={})
        assert missing.status == 404
        assert (await missing.json())["error"]["code"] == -32602

        invalid = await http_client.post("/tools/call", json={})
        assert invalid.status == 400
        assert (await invalid.json())["error"]["message"] == "Missing tool name"

        crashed = await http_client.post("/tools/call", json={"name": "explode"})
        assert crashed.status == 500
        assert (await crashed.json())["error"] == {"code": -32603, "message": "kaput"}

    async def test_cors_preflight(self, http_client):
        response = await http_client.options("/mcp")
        assert response.status == 200
        assert "Mcp-Session-Id" in response.headers["Access-Control-Allow-Headers"]


@pytest_asyncio.fixture
async def http_factory(app):
    clients = []

    async def make(**http_config):
        protocol = StreamableHTTPProtocol(app, {"http": http_config})
        client = test_utils.TestClient(test_utils.TestServer(protocol.web_app))
        await client.start_server()
        clients.append(client)
        return protocol, client

    yield make
    for client in clients:
        await client.close()


PING = {"jsonrpc": "2.0", "id": 1, "method": "ping"}


class TestHTTPSessions:

    async def test_session_is_reused(self, http_factory):
        protocol, client = await http_factory()
        for _ in range(3):
            await client.post("/mcp", json=PING, headers={"Mcp-Session-Id": "s1"})
        assert len(protocol._sessions) == 1

    async def test_sessions_are_bounded(self, http_factory):
        protocol, client = await http_factory(max_sessions=5)
        first = await client.post("/mcp", json=PING)
        first_id = first.headers["Mcp-Session-Id"]
        pending = asyncio.get_running_loop().create_future()
        protocol._sessions[first_id].handler.session._pending["srv_1"] = pending

        for _ in range(49):
            response = await client.post("/mcp", json=PING)
            assert response.status == 200

        assert len(protocol._sessions) == 5
        assert first_id not in protocol._sessions
        assert pending.cancelled()

    async def test_idle_sessions_expire(self, http_factory):
        protocol, client = await http_factory(session_ttl=0.05)
        await client.post("/mcp", json=PING, headers={"Mcp-Session-Id": "old"})
        await asyncio.sleep(0.1)
        await client.post("/mcp", json=PING, headers={"Mcp-Session-Id": "new"})
        assert "old" not in protocol._sessions
        assert list(protocol._sessions) == ["new"]

    async def test_delete_ends_session(self, http_factory):
        protocol, client = await http_factory()
        await client.post("/mcp", json=PING, headers={"Mcp-Session-Id": "s1"})

        response = await client.delete("/mcp", headers={"Mcp-Session-Id": "s1"})
        assert response.status == 204
        assert "s1" not in protocol._sessions

        again = await client.delete("/mcp", headers={"Mcp-Session-Id": "s1"})
        assert again.status == 404
