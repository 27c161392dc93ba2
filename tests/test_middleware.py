import asyncio
import json

import pytest

from forge_mcp.core.middleware import (
    ConcurrencyLimitMiddleware,
    LoggingMiddleware,
    RateLimitMiddleware,
    ResponseLimitingMiddleware,
    ToolInjectionMiddleware,
)
from forge_mcp.core.protocol_handler import MCPHandler
from forge_mcp.core.server import Server

pytestmark = pytest.mark.asyncio


@pytest.fixture
def server():
    server = Server()
    server.route("ping", lambda payload: {})
    return server


class TestRateLimit:

    @pytest.fixture
    def rate_limiter(self):
        return RateLimitMiddleware(max_requests=2, window_seconds=60)

    async def test_blocks_over_limit(self, server, rate_limiter):
        rate_limiter.install(server)
        assert await server.handle("ping") == {}
        assert await server.handle("ping") == {}

        blocked = await server.handle("ping")
        assert blocked["error"]["code"] == -32000
        assert blocked["error"]["message"] == "Rate limit exceeded for route: ping"
        assert blocked["error"]["data"] == {"route": "ping", "limit": 2, "window_seconds": 60, "current_count": 2}
        assert await rate_limiter.get_request_count("ping") == 2

    async def test_routes_are_counted_separately(self, rate_limiter):
        await rate_limiter.before("a", {})
        await rate_limiter.before("a", {})
        assert await rate_limiter.before("b", {}) is None
        assert await rate_limiter.get_request_count("a") == 2
        assert await rate_limiter.get_request_count("unknown") == 0

    async def test_window_expires(self):
        limiter = RateLimitMiddleware(max_requests=1, window_seconds=0.05)
        assert await limiter.before("ping", {}) is None
        assert await limiter.before("ping", {}) is not None
        await asyncio.sleep(0.1)
        assert await limiter.before("ping", {}) is None

    async def test_reset(self, rate_limiter):
        await rate_limiter.before("a", {})
        await rate_limiter.before("b", {})
        await rate_limiter.reset("a")
        assert await rate_limiter.get_request_count("a") == 0
        assert await rate_limiter.get_request_count("b") == 1
        await rate_limiter.reset()
        assert await rate_limiter.get_request_count("b") == 0

    async def test_rejection_reaches_client_as_jsonrpc_error(self, app):
        RateLimitMiddleware(max_requests=1).install(app.server)
        handler = MCPHandler(app)
        await handler.handle_message({"jsonrpc": "2.0", "id": 1, "method": "ping"})
        response = await handler.handle_message({"jsonrpc": "2.0", "id": 2, "method": "ping"})
        assert response["id"] == 2
        assert response["error"]["code"] == -32000
        assert response["error"]["data"]["limit"] == 1


class TestConcurrencyLimit:

    async def test_second_concurrent_request_rejected(self):
        server = Server()

        async def slow(payload):
            await asyncio.sleep(0.05)
            return {"ok": True}

        server.route("slow", slow)
        limiter = ConcurrencyLimitMiddleware(max_concurrent=1)
        limiter.install(server)

        first, second = await asyncio.gather(server.handle("slow"), server.handle("slow"))
        assert first == {"ok": True}
        assert second["error"]["message"] == "Concurrency limit exceeded"
        assert limiter.current == 0

        # the slot is free again
        assert await server.handle("slow") == {"ok": True}

    async def test_release_after_failure(self):
        limiter = ConcurrencyLimitMiddleware(max_concurrent=1)
        assert limiter.before("x", {}) is None
        assert limiter.before("x", {}) is not None
        limiter.release()
        assert limiter.before("x", {}) is None
        limiter.release()
        limiter.release()
        assert limiter.current == 0


class TestResponseLimiting:

    async def test_truncates_combined_text(self, app):
        @app.tool()
        def chatty(args):
            return [{"type": "text", "text": "a" * 30}, {"type": "text", "text": "b" * 30}]

        ResponseLimitingMiddleware(max_size=20).install(app.server)
        result = await app.server.handle("tools/call", {"name": "chatty"})
        assert result["content"] == [{"type": "text", "text": "aaaaa... [truncated]"}]
        assert len(result["content"][0]["text"]) == 20

    async def test_small_output_untouched(self, app):
        ResponseLimitingMiddleware(max_size=20).install(app.server)
        result = await app.server.handle("tools/call", {"name": "add", "arguments": {"a": 1, "b": 1}})
        assert result["content"] == [{"type": "text", "text": "2"}]

    async def test_tool_filter(self, app):
        @app.tool()
        def big(args):
            return "x" * 100

        ResponseLimitingMiddleware(max_size=20, tool_filter=["other"]).install(app.server)
        result = await app.server.handle("tools/call", {"name": "big"})
        assert result["content"][0]["text"] == "x" * 100


class TestToolInjection:

    @pytest.fixture
    def injection(self, app):
        injection = ToolInjectionMiddleware()
        injection.install(app.server)
        return injection

    async def test_injected_tool_is_listed_and_callable(self, app, injection):
        injection.add_tool("hello", "Say hello", {"type": "object", "properties": {}},
                           lambda args: f"hello {args.get('who', 'world')}")
        listed = await app.server.handle("tools/list", {})
        assert "hello" in [t["name"] for t in listed["tools"]]
        assert "add" in [t["name"] for t in listed["tools"]]

        result = await app.server.handle("tools/call", {"name": "hello", "arguments": {"who": "bob"}})
        assert result == {"content": [{"type": "text", "text": "hello bob"}]}

        # regular tools still reach their handler
        regular = await app.server.handle("tools/call", {"name": "add", "arguments": {"a": 2, "b": 2}})
        assert regular["content"][0]["text"] == "4"

    async def test_failure_becomes_error_result(self, app, injection):
        def broken(args):
            raise ValueError("boom")

        injection.add_tool("broken", "Always fails", {"type": "object"}, broken)
        result = await app.server.handle("tools/call", {"name": "broken"})
        assert result == {"content": [{"type": "text", "text": "Tool execution error: boom"}], "isError": True}

    async def test_prompt_tools(self, app, injection):
        injection.add_prompt_tools(app)
        listing = await app.server.handle("tools/call", {"name": "list_prompts"})
        prompts = json.loads(listing["content"][0]["text"])
        assert prompts[0]["name"] == "explain"

        rendered = await app.server.handle("tools/call", {
            "name": "get_prompt", "arguments": {"name": "explain", "arguments": {"topic": "rain"}},
        })
        assert rendered["content"][0]["text"] == "Explain rain"

    async def test_resource_tools(self, app, injection):
        injection.add_resource_tools(app)
        listing = await app.server.handle("tools/call", {"name": "list_resources"})
        uris = [r["uri"] for r in json.loads(listing["content"][0]["text"])]
        assert uris == ["mem://readme", "mem://logo"]

        content = await app.server.handle("tools/call", {"name": "read_resource", "arguments": {"uri": "mem://readme"}})
        assert content["content"][0]["text"] == "hello world"


class TestLoggingMiddleware:

    async def test_request_and_response_entries(self, server):
        entries = []
        LoggingMiddleware(callback=entries.append).install(server)
        await server.handle("ping", {"a": 1})

        assert [e.phase for e in entries] == ["request", "response"]
        assert entries[0].route == "ping"
        assert entries[0].payload_size == len(json.dumps({"a": 1}))
        assert entries[1].success
        assert entries[1].duration is not None

    async def test_error_response_is_recorded(self):
        server = Server()
        server.route("fail", lambda payload: {"error": {"code": -1, "message": "nope"}})
        entries = []
        LoggingMiddleware(callback=entries.append).install(server)
        await server.handle("fail")
        assert not entries[1].success
        assert "nope" in entries[1].error_message

    async def test_logs_without_callback(self, server, caplog):
        LoggingMiddleware().install(server)
        with caplog.at_level("INFO", logger="forge_mcp.core.middleware"):
            await server.handle("ping")
        messages = [r.getMessage() for r in caplog.records]
        assert any(m.startswith("-> ping") for m in messages)
        assert any(m.startswith("<- ping ok") for m in messages)
