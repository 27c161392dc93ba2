import base64
import json

import pytest

from forge_mcp.core.protocol_handler import MCPHandler, jsonrpc_error, jsonrpc_result
from forge_mcp.core.session import ServerSession

pytestmark = pytest.mark.asyncio


@pytest.fixture
def handler(app):
    return MCPHandler(app, ServerSession("test-session"))


def request(method, params=None, request_id=1):
    message = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


async def test_initialize(handler):
    response = await handler.handle_message(request("initialize", {
        "protocolVersion": "2024-11-05",
        "capabilities": {"sampling": {}},
        "clientInfo": {"name": "pytest"},
    }))
    result = response["result"]
    assert result["protocolVersion"] == "2024-11-05"
    assert result["serverInfo"] == {"name": "test-app", "version": "1.2.3"}
    assert result["instructions"] == "Use the tools wisely"
    assert set(result["capabilities"]) == {"tools", "resources", "prompts"}
    assert handler.session.supports_sampling


async def test_initialize_falls_back_to_default_version(handler):
    response = await handler.handle_message(request("initialize", {"protocolVersion": "1999-01-01"}))
    assert response["result"]["protocolVersion"] == "2025-03-26"


async def test_tools_list(handler):
    response = await handler.handle_message(request("tools/list"))
    tools = {t["name"]: t for t in response["result"]["tools"]}
    assert set(tools) == {"add", "answer", "explode", "slow"}
    assert tools["add"]["description"] == "Add two numbers."
    assert tools["add"]["inputSchema"]["required"] == ["a", "b"]
    assert tools["answer"]["outputSchema"]["properties"]["result"] == {"type": "integer"}


async def test_tools_call(handler):
    response = await handler.handle_message(request("tools/call", {"name": "add", "arguments": {"a": 1, "b": 2}}, 7))
    assert response == {"jsonrpc": "2.0", "id": 7, "result": {"content": [{"type": "text", "text": "3"}]}}


async def test_tools_call_structured(handler):
    response = await handler.handle_message(request("tools/call", {"name": "answer"}))
    assert response["result"]["structuredContent"] == {"result": 42}


async def test_tools_call_missing_name(handler):
    response = await handler.handle_message(request("tools/call", {}, "abc"))
    assert response["id"] == "abc"
    assert response["error"] == {"code": -32602, "message": "Missing tool name"}


async def test_tools_call_unknown_tool(handler):
    response = await handler.handle_message(request("tools/call", {"name": "nope"}))
    assert response["error"]["code"] == -32602
    assert response["error"]["message"] == "Unknown tool: nope"


async def test_tool_exception_is_internal_error(handler):
    response = await handler.handle_message(request("tools/call", {"name": "explode"}))
    assert response["error"] == {"code": -32603, "message": "kaput"}


async def test_unknown_method(handler):
    response = await handler.handle_message(request("foo/bar"))
    assert response["error"] == {"code": -32601, "message": "Method 'foo/bar' not found"}


async def test_resources(handler):
    listed = await handler.handle_message(request("resources/list"))
    assert [r["uri"] for r in listed["result"]["resources"]] == ["mem://readme", "mem://logo"]

    templates = await handler.handle_message(request("resources/templates/list"))
    assert templates["result"]["resourceTemplates"][0]["uriTemplate"] == "users://{user_id}/profile"

    text = await handler.handle_message(request("resources/read", {"uri": "mem://readme/"}))
    assert text["result"]["contents"] == [{"uri": "mem://readme", "mimeType": "text/plain", "text": "hello world"}]

    blob = await handler.handle_message(request("resources/read", {"uri": "mem://logo"}))
    assert base64.b64decode(blob["result"]["contents"][0]["blob"]) == b"\x89PNG"

    templated = await handler.handle_message(request("resources/read", {"uri": "users://9/profile"}))
    content = templated["result"]["contents"][0]
    assert json.loads(content["text"]) == {"id": "9"}
    assert content["mimeType"] == "application/json"


async def test_resource_not_found(handler):
    response = await handler.handle_message(request("resources/read", {"uri": "mem://missing"}))
    assert response["error"] == {"code": -32002, "message": "Resource not found: mem://missing"}


async def test_resource_missing_uri(handler):
    response = await handler.handle_message(request("resources/read", {}))
    assert response["error"]["code"] == -32602


async def test_prompts(handler):
    listed = await handler.handle_message(request("prompts/list"))
    assert listed["result"]["prompts"] == [{
        "name": "explain",
        "description": "Explain a topic.",
        "arguments": [{"name": "topic", "required": True}],
    }]

    rendered = await handler.handle_message(request("prompts/get", {"name": "explain", "arguments": {"topic": "tides"}}))
    assert rendered["result"]["messages"] == [
        {"role": "user", "content": {"type": "text", "text": "Explain tides"}}
    ]


async def test_prompt_errors(handler):
    missing = await handler.handle_message(request("prompts/get", {"name": "nope"}))
    assert missing["error"]["code"] == -32001

    bad_args = await handler.handle_message(request("prompts/get", {"name": "explain"}))
    assert bad_args["error"]["code"] == -32602


async def test_completion_default_and_handler(app, handler):
    empty = await handler.handle_message(request("completion/complete", {"ref": {}, "argument": {}}))
    assert empty["result"] == {"completion": {"values": [], "total": 0, "hasMore": False}}

    @app.completion
    def complete(ref, argument, context):
        return [v for v in ("python", "pytorch", "rust") if v.startswith(argument.get("value", ""))]

    response = await handler.handle_message(request("completion/complete", {
        "ref": {"type": "ref/prompt", "name": "explain"},
        "argument": {"name": "topic", "value": "py"},
    }))
    assert response["result"]["completion"] == {"values": ["python", "pytorch"], "total": 2, "hasMore": False}


async def test_ping(handler):
    assert await handler.handle_message(request("ping")) == {"jsonrpc": "2.0", "id": 1, "result": {}}


async def test_notifications_get_no_response(handler):
    assert await handler.handle_message({"jsonrpc": "2.0", "method": "notifications/initialized"}) is None
    assert await handler.handle_message({
        "jsonrpc": "2.0", "method": "notifications/cancelled", "params": {"requestId": 3},
    }) is None


async def test_parse_error(handler):
    response = await handler.handle_raw("{not json")
    assert response["id"] is None
    assert response["error"]["code"] == -32700


async def test_invalid_request(handler):
    response = await handler.handle_message({"jsonrpc": "1.0", "id": 4, "method": "ping"})
    assert response["error"]["code"] == -32600


async def test_responses_go_to_session(handler):
    assert await handler.handle_message({"jsonrpc": "2.0", "id": "srv_99", "result": {}}) is None


async def test_short_circuit_error_becomes_jsonrpc_error(app, handler):
    app.server.add_before(lambda route, payload: {"error": {"code": -32000, "message": "busy", "data": {"n": 1}}})
    response = await handler.handle_message(request("ping"))
    assert response["error"] == {"code": -32000, "message": "busy", "data": {"n": 1}}


async def test_schema_refs_are_inlined(app, handler):
    @app.tool(input_schema={
        "type": "object",
        "properties": {"point": {"$ref": "#/$defs/Point"}},
        "$defs": {"Point": {"type": "object", "properties": {"x": {"type": "number"}}}},
    })
    def plot(args):
        return "ok"

    response = await handler.handle_message(request("tools/list"))
    schema = next(t for t in response["result"]["tools"] if t["name"] == "plot")["inputSchema"]
    assert "$defs" not in schema
    assert schema["properties"]["point"] == {"type": "object", "properties": {"x": {"type": "number"}}}


async def test_strict_input_validation(app, handler):
    app.server.strict_input_validation = True
    response = await handler.handle_message(request("tools/call", {"name": "add", "arguments": {"a": 1}}))
    assert response["error"]["code"] == -32602
    assert "Invalid arguments for tool 'add'" in response["error"]["message"]


async def test_envelope_helpers():
    assert jsonrpc_result(1, None) == {"jsonrpc": "2.0", "id": 1, "result": {}}
    assert jsonrpc_error(2, -32603, "boom") == {"jsonrpc": "2.0", "id": 2, "error": {"code": -32603, "message": "boom"}}
