import logging

import pytest

from forge_mcp.core.app import MCPApp
from forge_mcp.core.components import Prompt, Resource, ResourceTemplate, Tool
from forge_mcp.error_handling.exceptions import (
    NotFoundError,
    PromptNotFoundError,
    ResourceNotFoundError,
    ValidationError,
)
from forge_mcp.providers import AggregateProvider, DuplicateBehavior, LocalProvider


def make_tool(name, result=None, version=None):
    return Tool(name=name, fn=lambda args: result if result is not None else name, version=version)


@pytest.fixture
def provider():
    provider = LocalProvider()
    provider.add_tool(make_tool("alpha"))
    provider.add_tool(make_tool("beta"))
    provider.add_resource(Resource(uri="mem://notes", name="notes", provider=lambda params: "n"))
    provider.add_template(ResourceTemplate(uri_template="users://{id}", name="user", provider=lambda params: params))
    provider.add_prompt(Prompt(name="summarize", generator=lambda args: "Summarize"))
    return provider


class TestDuplicatePolicies:

    def test_error(self):
        provider = LocalProvider(on_duplicate="error")
        provider.add_tool(make_tool("a"))
        with pytest.raises(ValidationError) as exc_info:
            provider.add_tool(make_tool("a"))
        assert str(exc_info.value) == "component already exists: tool:a"

    def test_warn_keeps_existing_and_warns_once(self, caplog):
        provider = LocalProvider(on_duplicate=DuplicateBehavior.WARN)
        first = make_tool("a", result="first")
        provider.add_tool(first)
        with caplog.at_level(logging.WARNING, logger="forge_mcp.providers.local_provider"):
            kept = provider.add_tool(make_tool("a", result="second"))
            provider.add_tool(make_tool("a", result="third"))
        assert kept is first
        assert provider.find_tool("a") is first
        warnings = [r for r in caplog.records if "tool:a" in r.getMessage()]
        assert len(warnings) == 1

    def test_replace(self):
        provider = LocalProvider(on_duplicate="replace")
        provider.add_tool(make_tool("a", result="first"))
        replacement = make_tool("a", result="second")
        assert provider.add_tool(replacement) is replacement
        assert provider.find_tool("a") is replacement

    def test_ignore(self, caplog):
        provider = LocalProvider(on_duplicate="ignore")
        first = make_tool("a")
        provider.add_tool(first)
        with caplog.at_level(logging.WARNING):
            provider.add_tool(make_tool("a"))
        assert provider.find_tool("a") is first
        assert not caplog.records

    def test_invalid_policy(self):
        with pytest.raises(ValidationError):
            LocalProvider(on_duplicate="explode")

    def test_duplicate_keys_are_per_kind(self):
        provider = LocalProvider(on_duplicate="error")
        provider.add_tool(make_tool("shared"))
        provider.add_prompt(Prompt(name="shared", generator=lambda args: "x"))
        assert provider.find_prompt("shared") is not None


class TestLookups:

    def test_list_and_find(self, provider):
        assert [t.name for t in provider.list_tools()] == ["alpha", "beta"]
        assert provider.find_tool("alpha").name == "alpha"
        assert provider.find_tool("gamma") is None
        assert provider.find_resource("mem://notes").name == "notes"
        assert provider.find_resource_template("users://5").name == "user"
        assert provider.find_resource_template("groups://5") is None

    def test_get_raises_with_mcp_codes(self, provider):
        with pytest.raises(NotFoundError) as tool_error:
            provider.get_tool("gamma")
        assert tool_error.value.code == -32602

        with pytest.raises(ResourceNotFoundError) as resource_error:
            provider.get_resource("mem://missing")
        assert resource_error.value.code == -32002

        with pytest.raises(PromptNotFoundError) as prompt_error:
            provider.get_prompt("missing")
        assert prompt_error.value.code == -32001

    def test_remove(self, provider):
        provider.remove_tool("alpha")
        assert provider.find_tool("alpha") is None

        with pytest.raises(ResourceNotFoundError) as exc_info:
            provider.remove_resource("mem://missing")
        assert exc_info.value.code == -32002

        with pytest.raises(ResourceNotFoundError):
            provider.remove_template("users://{id}/missing")

        with pytest.raises(PromptNotFoundError) as exc_info:
            provider.remove_prompt("missing")
        assert exc_info.value.code == -32001

        with pytest.raises(NotFoundError) as exc_info:
            provider.remove_tool("missing")
        assert exc_info.value.code == -32602

    def test_first_matching_template_wins(self):
        provider = LocalProvider()
        provider.add_template(ResourceTemplate(uri_template="files://{name}", name="single", provider=lambda p: p))
        provider.add_template(ResourceTemplate(uri_template="files://{path*}", name="deep", provider=lambda p: p))
        assert provider.find_resource_template("files://a.txt").name == "single"
        assert provider.find_resource_template("files://dir/a.txt").name == "deep"

    def test_is_empty(self, provider):
        assert LocalProvider().is_empty()
        assert not provider.is_empty()


class TestVisibility:

    def test_disable_and_enable(self, provider):
        provider.disable(["tool:alpha", "prompt:summarize"])
        assert [t.name for t in provider.list_tools()] == ["beta"]
        assert provider.find_tool("alpha") is None
        assert provider.list_prompts() == []

        provider.enable(["tool:alpha"])
        assert provider.find_tool("alpha") is not None

    def test_allowlist(self, provider):
        provider.enable(["tool:beta"], only=True)
        assert [t.name for t in provider.list_tools()] == ["beta"]
        assert provider.list_resources() == []

        provider.reset_visibility()
        assert len(provider.list_tools()) == 2

    def test_templates_are_hidden_by_pattern_key(self, provider):
        provider.disable(["template:users://{id}"])
        assert provider.list_resource_templates() == []
        assert provider.find_resource_template("users://5") is None


class TestAggregate:

    def test_concatenates_and_first_hit_wins(self):
        first = LocalProvider()
        first.add_tool(make_tool("shared", result="first"))
        second = LocalProvider()
        second.add_tool(make_tool("shared", result="second"))
        second.add_tool(make_tool("only_second"))

        aggregate = AggregateProvider([first, second])
        assert [t.name for t in aggregate.list_tools()] == ["shared", "shared", "only_second"]
        assert aggregate.find_tool("shared") is first.find_tool("shared")
        assert aggregate.find_tool("only_second") is not None

    def test_child_visibility_applies_before_aggregate(self):
        child = LocalProvider()
        child.add_tool(make_tool("hidden"))
        child.disable(["tool:hidden"])
        aggregate = AggregateProvider([child])
        assert aggregate.find_tool("hidden") is None


class TestMounting:

    @pytest.mark.asyncio
    async def test_mount_with_prefix(self):
        child = MCPApp(name="child")

        @child.tool()
        def echo(args):
            return args.get("text", "")

        @child.resource("mem://notes")
        def notes(params):
            return "child notes"

        parent = MCPApp(name="parent")
        parent.mount(child, prefix="kid")

        assert [t.name for t in parent.list_all_tools()] == ["kid_echo"]
        assert [r.uri for r in parent.list_all_resources()] == ["mem://kid/notes"]
        assert await parent.invoke_tool("kid_echo", {"text": "hi"}) == "hi"
        content = await parent.read_resource("mem://kid/notes")
        assert content.data == "child notes"
        assert content.uri == "mem://kid/notes"

        with pytest.raises(NotFoundError):
            await parent.invoke_tool("echo")

    def test_mounted_app_is_read_live(self):
        child = MCPApp(name="child")
        parent = MCPApp(name="parent")
        parent.mount(child)
        child.add_tool(make_tool("late"))
        assert [t.name for t in parent.list_all_tools()] == ["late"]

    def test_local_then_latest_mount(self):
        first = MCPApp(name="first")
        first.add_tool(make_tool("dup", result="first"))
        second = MCPApp(name="second")
        second.add_tool(make_tool("dup", result="second"))

        parent = MCPApp(name="parent")
        parent.mount(first)
        parent.mount(second)
        assert parent.provider.find_tool("dup") is second.local.find_tool("dup")

        own = make_tool("dup", result="own")
        parent.add_tool(own)
        assert parent.provider.find_tool("dup") is own
