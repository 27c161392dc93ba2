import asyncio
import base64

import pytest

from forge_mcp.core.components import (
    AppConfig,
    Prompt,
    PromptArgument,
    PromptMessage,
    PromptResult,
    Resource,
    ResourceContent,
    ResourceTemplate,
    Tool,
    coerce_resource_content,
)
from forge_mcp.core.content import (
    EmbeddedResource,
    TextContent,
    ToolResultContent,
    ToolUseContent,
    parse_content,
    to_text,
)
from forge_mcp.error_handling.exceptions import ToolTimeoutError, ValidationError


class TestTool:

    @pytest.mark.asyncio
    async def test_invoke_sync_and_async(self):
        sync_tool = Tool(name="double", fn=lambda args: args["x"] * 2)

        async def triple(args):
            return args["x"] * 3

        async_tool = Tool(name="triple", fn=triple)
        assert await sync_tool.invoke({"x": 2}) == 4
        assert await async_tool.invoke({"x": 2}) == 6

    @pytest.mark.asyncio
    async def test_invoke_times_out(self):
        async def sleepy(args):
            await asyncio.sleep(1)

        tool = Tool(name="sleepy", fn=sleepy, timeout=0.05)
        with pytest.raises(ToolTimeoutError) as exc_info:
            await tool.invoke({})
        assert "Tool 'sleepy' execution timed out after 0.05s" in str(exc_info.value)
        assert exc_info.value.code == -32603

    @pytest.mark.asyncio
    async def test_timeout_not_hit(self):
        tool = Tool(name="quick", fn=lambda args: "ok", timeout=1.0)
        assert await tool.invoke({}) == "ok"

    def test_excluded_args_are_not_published(self):
        tool = Tool(
            name="search",
            fn=lambda args: None,
            input_schema={
                "type": "object",
                "properties": {"q": {"type": "string"}, "ctx": {"type": "object"}},
                "required": ["q", "ctx"],
            },
            exclude_args={"ctx"},
        )
        schema = tool.published_input_schema()
        assert list(schema["properties"]) == ["q"]
        assert schema["required"] == ["q"]
        # the stored schema is untouched
        assert "ctx" in tool.input_schema["properties"]

    def test_app_config_lands_in_meta(self):
        tool = Tool(name="widget", fn=lambda args: None, meta={"owner": "ui"},
                    app=AppConfig(resource_uri="ui://widget", prefers_border=True))
        assert tool.published_meta == {
            "owner": "ui",
            "ui": {"resourceUri": "ui://widget", "prefersBorder": True},
        }


class TestResources:

    @pytest.mark.asyncio
    async def test_bytes_are_base64_encoded(self):
        resource = Resource(uri="mem://logo", name="logo", provider=lambda params: b"\x00\x01")
        content = await resource.read()
        data = content.to_dict()
        assert data["blob"] == base64.b64encode(b"\x00\x01").decode("ascii")
        assert data["mimeType"] == "application/octet-stream"
        assert "text" not in data

    def test_coerce_resource_content(self):
        assert coerce_resource_content("mem://a", "hi", None).mime_type == "text/plain"
        as_json = coerce_resource_content("mem://a", {"k": 1}, None)
        assert as_json.mime_type == "application/json"
        assert as_json.data == '{"k": 1}'
        kept = coerce_resource_content("mem://a", ResourceContent(uri="", data="x"), "text/csv")
        assert kept.uri == "mem://a"
        assert kept.mime_type == "text/csv"

    def test_ui_resources_default_mime_type(self):
        resource = Resource(uri="ui://panel", name="panel", provider=lambda params: "<div/>")
        assert resource.mime_type == "text/html;profile=mcp-app"

    @pytest.mark.parametrize("template, uri, expected", [
        ("users://{user_id}/profile", "users://42/profile", {"user_id": "42"}),
        ("users://{user_id}/profile", "users://42/other", None),
        ("users://{user_id}/profile", "users://4/2/profile", None),
        ("files://{path*}", "files://docs/a/b.txt", {"path": "docs/a/b.txt"}),
        ("search://{kind}{?q,page}", "search://books?q=dune&page=2", {"kind": "books", "q": "dune", "page": "2"}),
        ("search://{kind}{?q,page}", "search://books", {"kind": "books"}),
        ("names://{name}", "names://hello%20world", {"name": "hello world"}),
    ])
    def test_template_matching(self, template, uri, expected):
        tpl = ResourceTemplate(uri_template=template, name="t", provider=lambda params: params)
        assert tpl.match(uri) == expected

    @pytest.mark.asyncio
    async def test_template_read_merges_params(self):
        tpl = ResourceTemplate(uri_template="users://{user_id}", name="user",
                               provider=lambda params: f"{params['user_id']}:{params['fields']}")
        content = await tpl.read("users://7", {"fields": "name"})
        assert content.uri == "users://7"
        assert content.data == "7:name"


class TestPrompts:

    @pytest.mark.asyncio
    async def test_missing_required_argument(self):
        prompt = Prompt(name="greet", generator=lambda args: "hi",
                        arguments=[PromptArgument(name="who", required=True)])
        with pytest.raises(ValidationError) as exc_info:
            await prompt.render({})
        assert str(exc_info.value) == "Missing required arguments for prompt 'greet': who"

    @pytest.mark.asyncio
    async def test_string_becomes_user_message(self):
        prompt = Prompt(name="greet", generator=lambda args: f"hi {args['who']}", description="Greeting")
        result = await prompt.render({"who": "bob"})
        assert [m.to_dict() for m in result.messages] == [
            {"role": "user", "content": {"type": "text", "text": "hi bob"}}
        ]
        assert result.description == "Greeting"

    @pytest.mark.asyncio
    async def test_message_list_and_result(self):
        as_list = Prompt(name="chat", generator=lambda args: [
            {"role": "assistant", "content": "hello"},
            PromptMessage(role="user", content={"type": "text", "text": "hey"}),
        ])
        result = await as_list.render()
        assert [m.role for m in result.messages] == ["assistant", "user"]

        as_result = Prompt(name="full", generator=lambda args: PromptResult(
            messages=[PromptMessage(role="user", content="x")], description="custom", meta={"v": 1}))
        rendered = await as_result.render()
        assert rendered.description == "custom"
        assert rendered.meta == {"v": 1}


class TestContent:

    def test_parse_content_blocks(self):
        blocks = parse_content([
            {"type": "text", "text": "hi"},
            {"type": "resource", "uri": "mem://x", "blob": "AAE=", "mimeType": "application/octet-stream"},
        ])
        assert isinstance(blocks[0], TextContent)
        assert isinstance(blocks[1], EmbeddedResource)

    def test_parse_sampling_tool_blocks(self):
        use, result = parse_content([
            {"type": "tool_use", "id": "c1", "name": "add", "input": {"a": 1}},
            {"type": "tool_result", "toolUseId": "c1", "content": [{"type": "text", "text": "2"}], "isError": True},
        ])
        assert isinstance(use, ToolUseContent)
        assert (use.name, use.input) == ("add", {"a": 1})
        assert isinstance(result, ToolResultContent)
        assert result.tool_use_id == "c1" and result.is_error
        assert result.to_dict()["toolUseId"] == "c1"

    def test_parse_content_rejects_unknown_type(self):
        with pytest.raises(ValidationError):
            parse_content([{"type": "hologram"}])

    def test_to_text(self):
        assert to_text("plain") == "plain"
        assert to_text(None) == "null"
        assert to_text({"a": 1}) == '{"a": 1}'
