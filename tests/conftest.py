import asyncio

import pytest

from forge_mcp.core.app import MCPApp
from forge_mcp.core.components import PromptArgument


@pytest.fixture
def app():
    """An app with one component of every kind."""
    app = MCPApp(name="test-app", version="1.2.3", instructions="Use the tools wisely")

    @app.tool(input_schema={
        "type": "object",
        "properties": {"a": {"type": "integer"}, "b": {"type": "integer"}},
        "required": ["a", "b"],
    })
    def add(args):
        """Add two numbers."""
        return args["a"] + args["b"]

    @app.tool(output_schema={"type": "integer"})
    def answer(args):
        return 42

    @app.tool()
    def explode(args):
        raise RuntimeError("kaput")

    @app.tool()
    async def slow(args):
        await asyncio.sleep(args.get("delay", 0.15))
        return "done"

    @app.resource("mem://readme", mime_type="text/plain")
    def readme(params):
        return "hello world"

    @app.resource("mem://logo")
    def logo(params):
        return b"\x89PNG"

    @app.resource("users://{user_id}/profile")
    def profile(params):
        return {"id": params["user_id"]}

    @app.prompt(arguments=[PromptArgument(name="topic", required=True)])
    def explain(args):
        """Explain a topic."""
        return f"Explain {args['topic']}"

    return app

