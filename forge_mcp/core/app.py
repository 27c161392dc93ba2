"""
MCP application.
This module provides MCPApp, which owns a Server dispatcher and a provider
tree, offers decorators to register components and installs the standard
MCP routes (``tools/list``, ``tools/call``, ``resources/read`` ...) on the
dispatcher so hooks apply to every method family.
"""

import dataclasses
import json
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from forge_mcp.core import sampling
from forge_mcp.core import schema as schema_utils
from forge_mcp.core.components import (
    AppConfig,
    Icon,
    Prompt,
    PromptArgument,
    Resource,
    ResourceContent,
    ResourceTemplate,
    Tool,
)
from forge_mcp.core.sampling import SamplingMessage, SamplingOptions, SamplingResult
from forge_mcp.core.server import Server
from forge_mcp.core.session import ServerSession
from forge_mcp.core.utils import call_maybe_async
from forge_mcp.error_handling.exceptions import ResourceNotFoundError, ValidationError
from forge_mcp.providers.aggregate import AggregateProvider, MountedAppProvider
from forge_mcp.providers.local_provider import DuplicateBehavior, LocalProvider
from forge_mcp.providers.provider import Provider
from forge_mcp.providers.transforms.namespace import Namespace
from forge_mcp.providers.transforms.transform import Transform

logger = logging.getLogger(__name__)

DEFAULT_PROTOCOL_VERSION = "2025-03-26"
SUPPORTED_PROTOCOL_VERSIONS = ("2025-03-26", "2024-11-05", "2025-06-18")
UI_EXTENSION_KEY = "io.modelcontextprotocol/ui"


def _first_doc_line(fn: Callable) -> Optional[str]:
    doc = (fn.__doc__ or "").strip()
    return doc.splitlines()[0].strip() if doc else None


def build_tool_result(result: Any, tool: Optional[Tool] = None) -> Dict[str, Any]:
    """
    Normalize a tool's return value into a ``tools/call`` result.

    A dict carrying ``content`` is kept as is (``isError``, ``_meta`` and
    ``structuredContent`` included); a list is the content; a string is one
    text block; anything else is one text block with its JSON form. When the
    tool declares an output schema, ``structuredContent`` is added.
    """
    if isinstance(result, dict) and "content" in result:
        payload = dict(result)
        if not isinstance(payload["content"], list):
            payload["content"] = [payload["content"]] if isinstance(payload["content"], dict) else []
        if "structuredContent" in payload and not isinstance(payload["structuredContent"], dict):
            payload["structuredContent"] = {"result": payload["structuredContent"]}
        return payload

    if isinstance(result, list):
        content = result
    elif isinstance(result, str):
        content = [{"type": "text", "text": result}]
    else:
        content = [{"type": "text", "text": json.dumps(result, default=str)}]

    payload: Dict[str, Any] = {"content": content}
    if tool is not None and tool.output_schema:
        wrapped = schema_utils.is_wrapped(schema_utils.normalize_output_schema(tool.output_schema))
        if isinstance(result, dict) and not wrapped:
            payload["structuredContent"] = result
        else:
            payload["structuredContent"] = {"result": result}
    return payload


class MCPApp:
    """
    An MCP server application.

    Components registered through the decorators land in a LocalProvider;
    additional providers and mounted apps are combined with it in an
    AggregateProvider whose transforms apply to everything.
    """

    def __init__(self,
                 name: str = "forge-mcp",
                 version: str = "0.1.0",
                 instructions: Optional[str] = None,
                 website_url: Optional[str] = None,
                 icons: Optional[List[Icon]] = None,
                 on_duplicate: Union[DuplicateBehavior, str] = DuplicateBehavior.WARN,
                 dereference_schemas: bool = True,
                 strict_input_validation: bool = False):
        self.server = Server(
            name=name,
            version=version,
            website_url=website_url,
            icons=icons,
            instructions=instructions,
            strict_input_validation=strict_input_validation,
        )
        self.dereference_schemas = dereference_schemas
        self.local = LocalProvider(on_duplicate=on_duplicate)
        self.provider = AggregateProvider([self.local])
        self._mounted: List[MountedAppProvider] = []
        self._completion_handler: Optional[Callable] = None
        self.sampling_options = SamplingOptions()
        self._register_routes()

    @property
    def name(self) -> str:
        return self.server.name

    @property
    def version(self) -> str:
        return self.server.version

    # Registration

    def add_tool(self, tool: Tool) -> Tool:
        return self.local.add_tool(tool)

    def add_resource(self, resource: Resource) -> Resource:
        return self.local.add_resource(resource)

    def add_template(self, template: ResourceTemplate) -> ResourceTemplate:
        return self.local.add_template(template)

    def add_prompt(self, prompt: Prompt) -> Prompt:
        return self.local.add_prompt(prompt)

    def tool(self,
             name: Optional[str] = None,
             description: Optional[str] = None,
             input_schema: Optional[Dict[str, Any]] = None,
             output_schema: Optional[Dict[str, Any]] = None,
             title: Optional[str] = None,
             icons: Optional[List[Icon]] = None,
             version: Optional[str] = None,
             exclude_args: Optional[Iterable[str]] = None,
             sequential: bool = False,
             timeout: Optional[float] = None,
             app: Optional[AppConfig] = None,
             meta: Optional[Dict[str, Any]] = None):
        """Register the decorated ``fn(arguments)`` as a tool."""
        def decorator(fn: Callable) -> Callable:
            self.add_tool(Tool(
                name=name or fn.__name__,
                fn=fn,
                input_schema=input_schema or {"type": "object", "properties": {}},
                output_schema=output_schema,
                description=description if description is not None else _first_doc_line(fn),
                title=title,
                icons=icons,
                version=version,
                exclude_args=set(exclude_args or []),
                sequential=sequential,
                timeout=timeout,
                app=app,
                meta=meta,
            ))
            return fn
        return decorator

    def resource(self,
                 uri: str,
                 name: Optional[str] = None,
                 description: Optional[str] = None,
                 mime_type: Optional[str] = None,
                 parameters: Optional[Dict[str, Any]] = None,
                 title: Optional[str] = None,
                 version: Optional[str] = None,
                 app: Optional[AppConfig] = None,
                 meta: Optional[Dict[str, Any]] = None):
        """Register the decorated ``fn(params)`` as a resource, or a template when ``uri`` has placeholders."""
        def decorator(fn: Callable) -> Callable:
            kwargs = dict(
                name=name or fn.__name__,
                provider=fn,
                description=description if description is not None else _first_doc_line(fn),
                mime_type=mime_type,
                title=title,
                version=version,
                app=app,
                meta=meta,
            )
            if "{" in uri:
                self.add_template(ResourceTemplate(uri_template=uri, parameters=parameters, **kwargs))
            else:
                self.add_resource(Resource(uri=uri, **kwargs))
            return fn
        return decorator

    def resource_template(self, uri_template: str, **kwargs):
        return self.resource(uri_template, **kwargs)

    def prompt(self,
               name: Optional[str] = None,
               description: Optional[str] = None,
               arguments: Optional[List[Union[PromptArgument, Dict[str, Any]]]] = None,
               title: Optional[str] = None,
               version: Optional[str] = None,
               meta: Optional[Dict[str, Any]] = None):
        """Register the decorated ``fn(arguments)`` as a prompt generator."""
        def decorator(fn: Callable) -> Callable:
            args = [a if isinstance(a, PromptArgument) else PromptArgument(**a) for a in arguments or []]
            self.add_prompt(Prompt(
                name=name or fn.__name__,
                generator=fn,
                description=description if description is not None else _first_doc_line(fn),
                arguments=args,
                title=title,
                version=version,
                meta=meta,
            ))
            return fn
        return decorator

    def completion(self, fn: Callable) -> Callable:
        """Register ``fn(ref, argument, context)`` as the ``completion/complete`` handler."""
        self._completion_handler = fn
        return fn

    # Composition

    def add_provider(self, provider: Provider) -> None:
        self.provider.add_provider(provider)

    def add_transform(self, transform: Transform) -> None:
        self.provider.add_transform(transform)

    def enable(self, keys: Iterable[str], only: bool = False) -> None:
        self.provider.enable(keys, only=only)

    def disable(self, keys: Iterable[str]) -> None:
        self.provider.disable(keys)

    def mount(self, app: "MCPApp", prefix: Optional[str] = None) -> MountedAppProvider:
        """
        Expose ``app``'s components through this app.

        With a prefix, names become ``prefix_name`` and URIs
        ``scheme://prefix/path``. Later mounts take precedence over earlier
        ones; local components take precedence over all mounts.
        """
        transforms = [Namespace(prefix)] if prefix else []
        mounted = MountedAppProvider(app, transforms=transforms)
        self._mounted.append(mounted)
        self.provider.providers.insert(1, mounted)
        logger.info(f"Mounted app '{app.name}' on '{self.name}' with prefix {prefix!r}")
        return mounted

    # Runtime

    def list_all_tools(self) -> List[Tool]:
        return self.provider.list_tools()

    def list_all_resources(self) -> List[Resource]:
        return self.provider.list_resources()

    def list_all_templates(self) -> List[ResourceTemplate]:
        return self.provider.list_resource_templates()

    def list_all_prompts(self) -> List[Prompt]:
        return self.provider.list_prompts()

    def has_completion_handler(self) -> bool:
        return self._completion_handler is not None

    def has_ui(self) -> bool:
        components = self.list_all_tools() + self.list_all_resources() + self.list_all_templates()
        return any(c.app is not None for c in components)

    async def call_tool(self, tool: Tool, arguments: Dict[str, Any]) -> Any:
        if self.server.strict_input_validation:
            schema_utils.validate(arguments, tool.published_input_schema(), f"arguments for tool '{tool.name}'")
        return await tool.invoke(arguments)

    async def invoke_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        """
        Resolve ``name`` through the provider tree and run it.

        Raises:
            NotFoundError: If no visible tool has that name
            ValidationError: If strict input validation rejects the arguments
        """
        tool = self.provider.get_tool(name)
        return await self.call_tool(tool, arguments or {})

    async def read_resource(self, uri: str, params: Optional[Dict[str, Any]] = None) -> ResourceContent:
        """
        Read a concrete resource, falling back to the first matching template.

        Raises:
            ResourceNotFoundError: If neither a resource nor a template matches
        """
        resource = self.provider.find_resource(uri)
        if resource is not None:
            return await resource.read(params)
        template = self.provider.find_resource_template(uri)
        if template is not None:
            return await template.read(uri, params)
        raise ResourceNotFoundError(f"Resource not found: {uri}")

    async def render_prompt(self, name: str, arguments: Optional[Dict[str, Any]] = None):
        prompt = self.provider.get_prompt(name)
        return await prompt.render(arguments)

    async def sample(self, session: ServerSession, messages: List[SamplingMessage], **overrides: Any) -> SamplingResult:
        """
        Run the sampling loop on ``session``.

        Options start from ``sampling_options`` (set from the config) and
        keyword arguments override single fields, e.g. ``tools=[...]``.
        """
        options = dataclasses.replace(self.sampling_options, **overrides)
        return await sampling.sample(session, messages, options)

    # Serialization of listings

    def _publish_schema(self, schema: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if schema is None or not self.dereference_schemas:
            return schema
        return schema_utils.dereference_refs(schema)

    def tool_to_dict(self, tool: Tool) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": tool.name, "inputSchema": self._publish_schema(tool.published_input_schema())}
        if tool.title:
            data["title"] = tool.title
        if tool.description:
            data["description"] = tool.description
        output_schema = schema_utils.normalize_output_schema(tool.output_schema)
        if output_schema:
            data["outputSchema"] = self._publish_schema(output_schema)
        if tool.icons:
            data["icons"] = [icon.to_dict() for icon in tool.icons]
        if tool.published_meta:
            data["_meta"] = tool.published_meta
        return data

    @staticmethod
    def resource_to_dict(resource: Resource) -> Dict[str, Any]:
        data: Dict[str, Any] = {"uri": resource.uri, "name": resource.name}
        if resource.title:
            data["title"] = resource.title
        if resource.description:
            data["description"] = resource.description
        if resource.mime_type:
            data["mimeType"] = resource.mime_type
        if resource.icons:
            data["icons"] = [icon.to_dict() for icon in resource.icons]
        if resource.published_meta:
            data["_meta"] = resource.published_meta
        return data

    @staticmethod
    def template_to_dict(template: ResourceTemplate) -> Dict[str, Any]:
        data: Dict[str, Any] = {"uriTemplate": template.uri_template, "name": template.name}
        if template.title:
            data["title"] = template.title
        if template.description:
            data["description"] = template.description
        if template.mime_type:
            data["mimeType"] = template.mime_type
        data["parameters"] = template.parameters or {}
        if template.published_meta:
            data["_meta"] = template.published_meta
        return data

    @staticmethod
    def prompt_to_dict(prompt: Prompt) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": prompt.name}
        if prompt.title:
            data["title"] = prompt.title
        if prompt.description:
            data["description"] = prompt.description
        if prompt.arguments:
            data["arguments"] = [arg.to_dict() for arg in prompt.arguments]
        if prompt.icons:
            data["icons"] = [icon.to_dict() for icon in prompt.icons]
        if prompt.meta:
            data["_meta"] = prompt.meta
        return data

    # Standard MCP routes

    def _register_routes(self) -> None:
        self.server.route("initialize", self._handle_initialize)
        self.server.route("ping", self._handle_ping)
        self.server.route("tools/list", self._handle_tools_list)
        self.server.route("tools/call", self._handle_tools_call)
        self.server.route("resources/list", self._handle_resources_list)
        self.server.route("resources/templates/list", self._handle_templates_list)
        self.server.route("resources/read", self._handle_resources_read)
        self.server.route("prompts/list", self._handle_prompts_list)
        self.server.route("prompts/get", self._handle_prompts_get)
        self.server.route("completion/complete", self._handle_completion)

    def capabilities(self) -> Dict[str, Any]:
        capabilities: Dict[str, Any] = {"tools": {}}
        if self.list_all_resources() or self.list_all_templates():
            capabilities["resources"] = {}
        if self.list_all_prompts():
            capabilities["prompts"] = {}
        if self.has_completion_handler():
            capabilities["completions"] = {}
        if self.has_ui():
            capabilities["extensions"] = {UI_EXTENSION_KEY: {}}
        return capabilities

    def _handle_initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        requested = params.get("protocolVersion")
        version = requested if requested in SUPPORTED_PROTOCOL_VERSIONS else DEFAULT_PROTOCOL_VERSION
        result: Dict[str, Any] = {
            "protocolVersion": version,
            "capabilities": self.capabilities(),
            "serverInfo": self.server.server_info(),
        }
        if self.server.instructions:
            result["instructions"] = self.server.instructions
        client = params.get("clientInfo") or {}
        logger.info(f"Initialize from {client.get('name', 'unknown client')} (protocol {version})")
        return result

    def _handle_ping(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    def _handle_tools_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"tools": [self.tool_to_dict(tool) for tool in self.list_all_tools()]}

    async def _handle_tools_call(self, params: Dict[str, Any]) -> Dict[str, Any]:
        name = params.get("name")
        if not name:
            raise ValidationError("Missing tool name")
        tool = self.provider.get_tool(name)
        result = await self.call_tool(tool, params.get("arguments") or {})
        return build_tool_result(result, tool)

    def _handle_resources_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"resources": [self.resource_to_dict(r) for r in self.list_all_resources()]}

    def _handle_templates_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"resourceTemplates": [self.template_to_dict(t) for t in self.list_all_templates()]}

    async def _handle_resources_read(self, params: Dict[str, Any]) -> Dict[str, Any]:
        uri = params.get("uri")
        if not uri:
            raise ValidationError("Missing resource URI")
        uri = uri.rstrip("/")
        content = await self.read_resource(uri, params.get("arguments"))
        return {"contents": [content.to_dict()]}

    def _handle_prompts_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"prompts": [self.prompt_to_dict(p) for p in self.list_all_prompts()]}

    async def _handle_prompts_get(self, params: Dict[str, Any]) -> Dict[str, Any]:
        name = params.get("name")
        if not name:
            raise ValidationError("Missing prompt name")
        rendered = await self.render_prompt(name, params.get("arguments") or {})
        result: Dict[str, Any] = {"messages": [m.to_dict() for m in rendered.messages]}
        if rendered.description:
            result["description"] = rendered.description
        if rendered.meta:
            result["_meta"] = rendered.meta
        return result

    async def _handle_completion(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if self._completion_handler is None:
            return {"completion": {"values": [], "total": 0, "hasMore": False}}
        value = await call_maybe_async(
            self._completion_handler,
            params.get("ref") or {},
            params.get("argument") or {},
            params.get("context") or {},
        )
        if isinstance(value, dict) and "completion" in value:
            return value
        if isinstance(value, dict):
            values = list(value.get("values") or [])
            return {"completion": {
                "values": values,
                "total": value.get("total", len(values)),
                "hasMore": value.get("hasMore", False),
            }}
        values = list(value or [])
        return {"completion": {"values": values, "total": len(values), "hasMore": False}}

    def __repr__(self) -> str:
        return f"MCPApp(name={self.name!r}, version={self.version!r})"
